"""Tests for beam/session.py."""

import pytest

from config.preferences import BeamConfigSnapshot, Preferences
from beam.models import create_text_message
from beam.session import SCATTER_RAY_DEFAULT, BeamSession
from tests.conftest import Reply, ScriptedGenerator


class _Accepted:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str | None]] = []

    def __call__(self, text: str, model_id: str | None) -> None:
        self.calls.append((text, model_id))


@pytest.fixture
def accepted() -> _Accepted:
    return _Accepted()


def _session(generator, prompts, **kwargs) -> BeamSession:
    return BeamSession(generator, prompts, **kwargs)


def test_open_falls_back_to_initial_model(generator, sample_prompts_config, user_history, accepted):
    session = _session(generator, sample_prompts_config)
    session.open(user_history, "claude", accepted)

    assert session.is_open
    assert session.input_ready
    assert session.input_issues is None
    assert [r.model_id for r in session.scatter.rays] == ["claude"] * SCATTER_RAY_DEFAULT
    assert session.gather.current_gather_model_id == "claude"


def test_open_without_model_creates_unassigned_rays(generator, sample_prompts_config, user_history, accepted):
    session = _session(generator, sample_prompts_config)
    session.open(user_history, None, accepted)
    assert [r.model_id for r in session.scatter.rays] == [None, None]


def test_open_rejects_history_without_trailing_user(generator, sample_prompts_config, accepted):
    session = _session(generator, sample_prompts_config)
    session.open([create_text_message("assistant", "Hi")], "claude", accepted)

    assert session.is_open
    assert session.input_ready is False
    assert session.input_history is None
    assert session.input_issues == "Invalid conversation history: missing user message"


def test_open_prefers_last_config(generator, sample_prompts_config, user_history, accepted):
    prefs = Preferences(last_config=BeamConfigSnapshot(
        id="current", name="", ray_model_ids=["gemini", "gpt", "grok"],
        gather_model_id="gpt", gather_factory_id="guided",
    ))
    session = _session(generator, sample_prompts_config, preferences=prefs, default_ray_model_ids=["claude"])
    session.open(user_history, "claude", accepted)

    assert [r.model_id for r in session.scatter.rays] == ["gemini", "gpt", "grok"]
    assert session.gather.current_gather_model_id == "gpt"
    assert session.gather.current_factory_id == "guided"


def test_open_uses_default_models(generator, sample_prompts_config, user_history, accepted):
    session = _session(generator, sample_prompts_config, default_ray_model_ids=["gemini", "gpt"])
    session.open(user_history, None, accepted)

    assert [r.model_id for r in session.scatter.rays] == ["gemini", "gpt"]
    assert session.gather.current_gather_model_id == "gemini"


def test_gather_model_adopted_only_on_first_open(generator, sample_prompts_config, user_history, accepted):
    session = _session(generator, sample_prompts_config)
    session.open(user_history, "claude", accepted)
    session.open(user_history, "gemini", accepted)
    assert session.gather.current_gather_model_id == "claude"


def test_reopen_recycles_rays(generator, sample_prompts_config, user_history, accepted):
    session = _session(generator, sample_prompts_config)
    session.open(user_history, "claude", accepted)
    session.scatter.set_ray_model_ids(["gemini", "gpt", "grok"])
    session.terminate_keeping_settings()
    session.open(user_history, "claude", accepted)
    assert [r.model_id for r in session.scatter.rays] == ["gemini", "gpt", "grok"]


def test_reopen_keeps_factory_selection(generator, sample_prompts_config, user_history, accepted):
    session = _session(generator, sample_prompts_config)
    session.open(user_history, "claude", accepted)
    session.gather.set_current_factory_id("guided")
    session.terminate_keeping_settings()
    assert session.gather.current_factory_id == "guided"

    session.open(user_history, "claude", accepted)
    assert session.gather.current_factory_id == "guided"


def test_config_changes_reach_sink(generator, sample_prompts_config, user_history, accepted):
    changes: list[dict] = []
    session = _session(generator, sample_prompts_config, on_config_change=changes.append)
    session.open(user_history, "claude", accepted)
    session.gather.set_current_factory_id("eval")
    assert {"ray_model_ids": ["claude", "claude"]} in changes
    assert changes[-1] == {"gather_factory_id": "eval"}


def test_subscribe_and_unsubscribe(generator, sample_prompts_config, user_history, accepted):
    session = _session(generator, sample_prompts_config)
    seen: list[int] = []
    unsubscribe = session.subscribe(lambda: seen.append(1))
    session.open(user_history, "claude", accepted)
    assert seen

    count = len(seen)
    unsubscribe()
    session.terminate_keeping_settings()
    assert len(seen) == count


async def test_accept_ray_delivers_once(sample_prompts_config, user_history, accepted, caplog):
    generator = ScriptedGenerator({"claude": Reply(chunks=["Use YAML."])})
    session = _session(generator, sample_prompts_config)
    session.open(user_history, "claude", accepted)
    session.scatter.start_all()
    await session.scatter.wait_idle()

    ray_id = session.scatter.rays[0].ray_id
    assert session.accept_ray(ray_id) is True
    assert session.accept_ray(ray_id) is False
    assert accepted.calls == [("Use YAML.", "claude")]
    assert "already delivered" in caplog.text


async def test_accept_fusion_requires_usable_output(generator, sample_prompts_config, user_history, accepted):
    session = _session(generator, sample_prompts_config)
    session.open(user_history, "claude", accepted)
    session.scatter.start_all()
    await session.scatter.wait_idle()

    session.gather.set_current_factory_id("custom")
    idle = session.gather.create_fusion()
    assert session.accept_fusion(idle.fusion_id) is False

    session.gather.set_current_factory_id("fuse")
    fusion = session.gather.create_fusion()
    await session.gather.wait_idle()
    assert session.accept_fusion(fusion.fusion_id) is True
    assert accepted.calls == [("Mock response", "claude")]


async def test_council_over_session_rays(sample_prompts_config, user_history, accepted):
    ranking = Reply(chunks=["FINAL RANKING:\n1. Response B\n2. Response A"])
    generator = ScriptedGenerator({
        "claude": [Reply(chunks=["Use YAML."]), ranking],
        "gemini": [Reply(chunks=["Use JSON."]), ranking],
        "gpt": Reply(chunks=["JSON wins."]),
    })
    session = _session(generator, sample_prompts_config, model_name=str.upper)
    session.open(user_history, "claude", accepted)
    session.scatter.set_ray_model_ids(["claude", "gemini"])
    session.scatter.start_all()
    await session.scatter.wait_idle()

    rays = session.council_rays()
    assert [r.model_name for r in rays] == ["CLAUDE", "GEMINI"]

    await session.council.start_council("gpt")

    assert session.council.phase == "complete"
    assert session.council.results.aggregations[0].model_name == "GEMINI"
    assert session.accept_council() is True
    assert accepted.calls == [("JSON wins.", "gpt")]


async def test_terminate_keeps_models_and_clears_content(generator, sample_prompts_config, user_history, accepted):
    session = _session(generator, sample_prompts_config)
    session.open(user_history, "claude", accepted)
    session.scatter.start_all()
    await session.scatter.wait_idle()
    session.gather.create_fusion()
    await session.gather.wait_idle()

    session.terminate_keeping_settings()

    assert session.is_open is False
    assert [r.status for r in session.scatter.rays] == ["empty", "empty"]
    assert [r.model_id for r in session.scatter.rays] == ["claude", "claude"]
    assert session.gather.fusions == []
    assert session.gather.current_gather_model_id == "claude"
    assert session.council.phase == "idle"
    ray_id = session.scatter.rays[0].ray_id
    assert session.accept_ray(ray_id) is False


def test_load_beam_config_none_is_noop(generator, sample_prompts_config, user_history, accepted):
    session = _session(generator, sample_prompts_config)
    session.open(user_history, "claude", accepted)
    session.load_beam_config(None)
    assert len(session.scatter.rays) == SCATTER_RAY_DEFAULT


def test_replace_message_text(generator, sample_prompts_config, user_history, accepted, caplog):
    session = _session(generator, sample_prompts_config)
    session.open(user_history, "claude", accepted)
    target = session.input_history[-1]

    session.input_history_replace_message_text(target.message_id, "Edited question")

    assert session.input_history[-1].text == "Edited question"
    assert user_history[-1].text != "Edited question"

    session.input_history_replace_message_text("missing", "x")
    assert "Cannot find message" in caplog.text
