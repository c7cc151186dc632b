"""Persisted beam preferences: last-used configuration, named presets and display toggles.

Read once at session start and written on change. A missing or unreadable file
yields the defaults; the engine only ever sees an immutable snapshot.
"""

import logging
import uuid
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

TOGGLES = (
    "scatter_show_lettering",
    "gather_auto_start_after_scatter",
)


@dataclass(frozen=True)
class BeamConfigSnapshot:
    id: str
    name: str
    ray_model_ids: list[str] = field(default_factory=list)
    gather_model_id: str | None = None
    gather_factory_id: str | None = None


@dataclass(frozen=True)
class Preferences:
    presets: list[BeamConfigSnapshot] = field(default_factory=list)
    last_config: BeamConfigSnapshot | None = None
    scatter_show_lettering: bool = False          # prefix ray panels with A, B, ...
    gather_auto_start_after_scatter: bool = False  # merge right after scattering without asking


def _snapshot_from_raw(raw: dict) -> BeamConfigSnapshot:
    return BeamConfigSnapshot(
        id=str(raw.get("id", "current")),
        name=str(raw.get("name", "")),
        ray_model_ids=[str(m) for m in raw.get("ray_model_ids") or []],
        gather_model_id=raw.get("gather_model_id"),
        gather_factory_id=raw.get("gather_factory_id"),
    )


class PreferencesStore:
    """YAML-backed preferences. Every mutator persists immediately."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._prefs = Preferences()

    @property
    def preferences(self) -> Preferences:
        return self._prefs

    def load(self) -> Preferences:
        if not self._path.exists():
            self._prefs = Preferences()
            return self._prefs
        try:
            with self._path.open("r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
            last_raw = raw.get("last_config")
            self._prefs = Preferences(
                presets=[_snapshot_from_raw(p) for p in raw.get("presets") or []],
                last_config=_snapshot_from_raw(last_raw) if last_raw else None,
                **{name: bool(raw.get(name, False)) for name in TOGGLES},
            )
        except (yaml.YAMLError, AttributeError, TypeError) as exc:
            logger.warning("Ignoring unreadable preferences file %s: %s", self._path, exc)
            self._prefs = Preferences()
        return self._prefs

    def save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("w", encoding="utf-8") as f:
            yaml.safe_dump(asdict(self._prefs), f, sort_keys=False)

    def _set(self, prefs: Preferences) -> None:
        self._prefs = prefs
        self.save()

    # --- last config ---

    def update_last_config(self, update: dict) -> None:
        last = self._prefs.last_config or BeamConfigSnapshot(id="current", name="")
        self._set(replace(self._prefs, last_config=replace(last, **update)))

    def delete_last_config(self) -> None:
        self._set(replace(self._prefs, last_config=None))

    # --- presets ---

    def add_preset(
        self,
        name: str,
        ray_model_ids: list[str],
        gather_model_id: str | None,
        gather_factory_id: str | None,
    ) -> BeamConfigSnapshot:
        preset = BeamConfigSnapshot(
            id=f"beam-preset-{uuid.uuid4().hex[:8]}",
            name=name,
            ray_model_ids=list(ray_model_ids),
            gather_model_id=gather_model_id,
            gather_factory_id=gather_factory_id,
        )
        self._set(replace(self._prefs, presets=[*self._prefs.presets, preset]))
        return preset

    def delete_preset(self, preset_id: str) -> None:
        self._set(replace(self._prefs, presets=[p for p in self._prefs.presets if p.id != preset_id]))

    def rename_preset(self, preset_id: str, name: str) -> None:
        self._set(replace(
            self._prefs,
            presets=[replace(p, name=name) if p.id == preset_id else p for p in self._prefs.presets],
        ))

    def find_preset(self, name_or_id: str) -> BeamConfigSnapshot | None:
        return next((p for p in self._prefs.presets if name_or_id in (p.id, p.name)), None)

    # --- toggles ---

    def toggle(self, name: str) -> bool:
        if name not in TOGGLES:
            raise ValueError(f"Unknown preference toggle: {name}")
        value = not getattr(self._prefs, name)
        self._set(replace(self._prefs, **{name: value}))
        return value
