"""
MPCA Run State

The phase machine and the persisted progress record for one feature.

  Phase       Init → Plan → Run → Verify, plus the Verify → Run retry edge
  RunState    slug, phase, step, turns, cost, timestamps, failure marker
  Store       state.toml beside the feature's spec docs, replaced atomically
"""

from __future__ import annotations

import json
import re
import threading
import tomllib
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator

from mpca.adapters.storage import Storage
from mpca.errors import (
    CorruptedState,
    FeatureAlreadyExists,
    InvalidFeatureSlug,
    InvalidTransition,
    PathNotFound,
    StateMissing,
)


STATE_FILE = "state.toml"

SLUG_MIN_LENGTH = 3
SLUG_MAX_LENGTH = 50
_SLUG_RE = re.compile(r"[a-z][a-z0-9-]*")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Feature identity
# ---------------------------------------------------------------------------

def validate_slug(slug: str) -> str:
    """
    A slug is 3-50 chars of [a-z0-9-], starts with a letter, and has no
    doubled or trailing hyphen. Returns the slug unchanged.
    """
    if not SLUG_MIN_LENGTH <= len(slug) <= SLUG_MAX_LENGTH:
        raise InvalidFeatureSlug(slug, f"must be {SLUG_MIN_LENGTH}-{SLUG_MAX_LENGTH} characters")
    if not slug[0].isascii() or not slug[0].islower() or not slug[0].isalpha():
        raise InvalidFeatureSlug(slug, "must start with a lowercase letter")
    if not _SLUG_RE.fullmatch(slug):
        raise InvalidFeatureSlug(slug, "only lowercase letters, digits and hyphens are allowed")
    if "--" in slug:
        raise InvalidFeatureSlug(slug, "no consecutive hyphens allowed")
    if slug.endswith("-"):
        raise InvalidFeatureSlug(slug, "must not end with a hyphen")
    return slug


# ---------------------------------------------------------------------------
# Phase machine
# ---------------------------------------------------------------------------

class Phase(str, Enum):
    INIT = "Init"
    PLAN = "Plan"
    RUN = "Run"
    VERIFY = "Verify"


# Forward successor of each phase. Verify has none.
_SUCCESSOR: dict[Phase, Phase] = {
    Phase.INIT: Phase.PLAN,
    Phase.PLAN: Phase.RUN,
    Phase.RUN: Phase.VERIFY,
}

# Non-forward edges beyond re-entry.
_RETRY_EDGES: dict[Phase, Phase] = {
    Phase.VERIFY: Phase.RUN,
}


def legal_targets(current: Phase) -> list[Phase]:
    """Phases reachable from `current` in one transition."""
    targets = [current]
    if current in _SUCCESSOR:
        targets.append(_SUCCESSOR[current])
    if current in _RETRY_EDGES:
        targets.append(_RETRY_EDGES[current])
    return targets


def transition(current: Phase, target: Phase) -> Phase:
    """
    Validate a requested transition. Returns the target on success.

    Legal: the immediate successor, the same phase (re-entry), or
    Verify → Run. Everything else raises InvalidTransition.
    """
    legal = legal_targets(current)
    if target not in legal:
        raise InvalidTransition(current, target, legal)
    return target


def has_reached(current: Phase, target: Phase) -> bool:
    """True when `current` is `target` or lies past it on the forward chain."""
    phase: Phase | None = target
    while phase is not None:
        if phase == current:
            return True
        phase = _SUCCESSOR.get(phase)
    return False


def is_retry(current: Phase, target: Phase) -> bool:
    return _RETRY_EDGES.get(current) == target


# ---------------------------------------------------------------------------
# Record
# ---------------------------------------------------------------------------

class FailureMarker(BaseModel):
    kind: str
    message: str
    step: int = 0


class RunState(BaseModel):
    """
    Persisted progress of one feature.

    `phase` is the last phase fully reached. While a workflow is in
    flight, `target_phase` names the phase it drives toward and `step`
    counts its durable steps. Completing the workflow moves `phase` to
    the target and resets `step` to 0. Turns and cost only grow.
    """

    feature_slug: str
    phase: Phase = Phase.INIT
    step: int = Field(default=0, ge=0)
    turns: int = Field(default=0, ge=0)
    cost_usd: float = Field(default=0.0, ge=0.0)
    created_at: str = Field(default_factory=_now)
    updated_at: str = Field(default_factory=_now)
    target_phase: Phase | None = None
    failure: FailureMarker | None = None

    @field_validator("created_at", "updated_at")
    @classmethod
    def _iso_timestamp(cls, value: str) -> str:
        datetime.fromisoformat(value)
        return value

    @property
    def in_flight(self) -> bool:
        return self.target_phase is not None

    def record_exchange(self, cost: float) -> None:
        if cost < 0:
            raise ValueError(f"exchange cost must be non-negative, got {cost}")
        self.turns += 1
        self.cost_usd += cost

    def begin(self, target: Phase) -> None:
        """Start work toward `target` from step 0."""
        self.target_phase = target
        self.step = 0

    def advance(self) -> None:
        """Account for one successful step."""
        self.step += 1
        self.failure = None

    def fail(self, kind: str, message: str) -> None:
        self.failure = FailureMarker(kind=kind, message=message, step=self.step)

    def complete(self) -> None:
        """Enter the target phase."""
        if self.target_phase is None:
            return
        self.phase = self.target_phase
        self.target_phase = None
        self.step = 0
        self.failure = None


# ---------------------------------------------------------------------------
# TOML codec
# ---------------------------------------------------------------------------

_FIELD_ORDER = (
    "feature_slug", "phase", "step", "turns", "cost_usd",
    "created_at", "updated_at", "target_phase",
)


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return repr(value)
    return json.dumps(str(value), ensure_ascii=False)


def dumps_state(state: RunState) -> str:
    data = state.model_dump()
    lines: list[str] = ["# MPCA run state. Managed by mpca; edit with care."]
    for key in _FIELD_ORDER:
        value = data[key]
        if value is None:
            continue
        lines.append(f"{key} = {_toml_value(value)}")

    if state.failure is not None:
        lines.append("")
        lines.append("[failure]")
        for key, value in state.failure.model_dump().items():
            lines.append(f"{key} = {_toml_value(value)}")
    return "\n".join(lines) + "\n"


def loads_state(slug: str, text: str) -> RunState:
    """Parse a state.toml. Any structural problem is a CorruptedState."""
    try:
        data: dict[str, Any] = tomllib.loads(text)
    except tomllib.TOMLDecodeError as e:
        raise CorruptedState(slug, f"unparseable TOML: {e}") from e

    try:
        state = RunState(**data)
    except (ValidationError, TypeError) as e:
        raise CorruptedState(slug, f"invalid record: {e}") from e

    if state.feature_slug != slug:
        raise CorruptedState(slug, f"record belongs to '{state.feature_slug}'")
    return state


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class RunStateStore:
    """
    Loads, creates and persists RunState records keyed by slug.

    Durability comes from the storage adapter's atomic write. Saves
    for one slug are serialised with a per-slug lock.
    """

    def __init__(self, storage: Storage, specs_dir: Path):
        self.storage = storage
        self.specs_dir = specs_dir
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def path_for(self, slug: str) -> Path:
        return self.specs_dir / slug / STATE_FILE

    def exists(self, slug: str) -> bool:
        return self.storage.exists(self.path_for(slug))

    def load(self, slug: str) -> RunState:
        validate_slug(slug)
        try:
            text = self.storage.read(self.path_for(slug))
        except PathNotFound as e:
            raise StateMissing(slug) from e
        return loads_state(slug, text)

    def create(self, slug: str) -> RunState:
        validate_slug(slug)
        with self._lock_for(slug):
            if self.storage.exists(self.path_for(slug)):
                raise FeatureAlreadyExists(slug)
            state = RunState(feature_slug=slug)
            self._write(state)
        logger.info(f"[STATE] Created run state for {slug}")
        return state

    def save(self, state: RunState) -> None:
        with self._lock_for(state.feature_slug):
            state.updated_at = _now()
            self._write(state)
        logger.debug(
            f"[STATE] {state.feature_slug}: phase={state.phase.value} "
            f"step={state.step} turns={state.turns} cost=${state.cost_usd:.4f}"
        )

    def archive(self, slug: str) -> Path:
        """Copy a damaged record aside so a fresh one can take its place."""
        path = self.path_for(slug)
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        archived = path.with_name(f"{STATE_FILE}.corrupt-{stamp}")
        with self._lock_for(slug):
            self.storage.write(archived, self.storage.read(path))
        logger.warning(f"[STATE] Archived corrupted state for {slug} to {archived.name}")
        return archived

    def reset(self, slug: str) -> RunState:
        """Overwrite whatever is on disk with a fresh Init record."""
        state = RunState(feature_slug=slug)
        with self._lock_for(slug):
            self._write(state)
        return state

    def list_features(self) -> list[str]:
        if not self.storage.exists(self.specs_dir):
            return []
        return [
            name for name in self.storage.list(self.specs_dir)
            if self.storage.exists(self.specs_dir / name / STATE_FILE)
        ]

    def _write(self, state: RunState) -> None:
        path = self.path_for(state.feature_slug)
        self.storage.mkdir_all(path.parent)
        self.storage.write(path, dumps_state(state))

    def _lock_for(self, slug: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(slug, threading.Lock())
