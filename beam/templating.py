"""Literal placeholder substitution for instruction prompts."""


def mix_prompt(template: str, replacements: dict[str, str]) -> str:
    """Replace each placeholder (e.g. '{{N}}') with its value. No escaping, no control flow."""
    result = template
    for placeholder, value in replacements.items():
        result = result.replace(placeholder, value)
    return result
