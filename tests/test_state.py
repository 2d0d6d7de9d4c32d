import pytest

from mpca.errors import CorruptedState, InvalidFeatureSlug, InvalidTransition
from mpca.state import (
    Phase,
    RunState,
    dumps_state,
    has_reached,
    is_retry,
    legal_targets,
    loads_state,
    transition,
    validate_slug,
)


# ---------------------------------------------------------------------------
# Slugs
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("slug", ["add-caching", "abc", "v2-api", "a" * 50, "x1-y2-z3"])
def test_valid_slugs(slug):
    assert validate_slug(slug) == slug


@pytest.mark.parametrize("slug", [
    "ab",              # too short
    "a" * 51,          # too long
    "Add-Caching",     # uppercase
    "add caching",     # whitespace
    "add_caching",     # underscore
    "add.caching",
    "1-feature",       # leading digit
    "-feature",
    "add--caching",
    "add-caching-",
    "add-caching\n",   # trailing newline
])
def test_invalid_slugs(slug):
    with pytest.raises(InvalidFeatureSlug) as exc:
        validate_slug(slug)
    assert exc.value.kind == "invalid_slug"
    assert slug in str(exc.value)


# ---------------------------------------------------------------------------
# Phase machine
# ---------------------------------------------------------------------------

def test_init_only_reaches_itself_and_plan():
    assert legal_targets(Phase.INIT) == [Phase.INIT, Phase.PLAN]
    assert transition(Phase.INIT, Phase.PLAN) == Phase.PLAN
    assert transition(Phase.INIT, Phase.INIT) == Phase.INIT


@pytest.mark.parametrize("target", [Phase.RUN, Phase.VERIFY])
def test_init_cannot_skip_ahead(target):
    with pytest.raises(InvalidTransition) as exc:
        transition(Phase.INIT, target)
    err = exc.value
    assert err.current == Phase.INIT
    assert err.target == target
    assert "Init" in str(err) and target.value in str(err)
    assert "legal from Init: Init, Plan" in str(err)


def test_forward_and_reentry():
    assert transition(Phase.PLAN, Phase.RUN) == Phase.RUN
    assert transition(Phase.RUN, Phase.VERIFY) == Phase.VERIFY
    assert transition(Phase.RUN, Phase.RUN) == Phase.RUN
    assert transition(Phase.VERIFY, Phase.VERIFY) == Phase.VERIFY


def test_verify_retries_into_run():
    assert transition(Phase.VERIFY, Phase.RUN) == Phase.RUN


@pytest.mark.parametrize("current,target", [
    (Phase.PLAN, Phase.VERIFY),
    (Phase.PLAN, Phase.INIT),
    (Phase.RUN, Phase.PLAN),
    (Phase.VERIFY, Phase.PLAN),
    (Phase.VERIFY, Phase.INIT),
])
def test_illegal_transitions(current, target):
    with pytest.raises(InvalidTransition):
        transition(current, target)


@pytest.mark.parametrize("current,target,reached", [
    (Phase.INIT, Phase.INIT, True),
    (Phase.INIT, Phase.PLAN, False),
    (Phase.PLAN, Phase.INIT, True),
    (Phase.RUN, Phase.PLAN, True),
    (Phase.VERIFY, Phase.PLAN, True),
    (Phase.VERIFY, Phase.RUN, True),
    (Phase.PLAN, Phase.VERIFY, False),
])
def test_has_reached_follows_forward_chain(current, target, reached):
    assert has_reached(current, target) is reached


def test_only_verify_retries_run():
    assert is_retry(Phase.VERIFY, Phase.RUN)
    assert not is_retry(Phase.RUN, Phase.RUN)
    assert not is_retry(Phase.VERIFY, Phase.PLAN)


# ---------------------------------------------------------------------------
# RunState
# ---------------------------------------------------------------------------

def test_fresh_state():
    state = RunState(feature_slug="add-caching")
    assert state.phase == Phase.INIT
    assert state.step == 0
    assert state.turns == 0
    assert state.cost_usd == 0.0
    assert state.failure is None
    assert not state.in_flight


def test_step_lifecycle():
    state = RunState(feature_slug="add-caching")
    state.begin(Phase.PLAN)
    assert state.in_flight

    state.advance()
    state.fail("tests_failed", "boom")
    assert state.failure.step == 1
    assert state.phase == Phase.INIT

    state.advance()
    assert state.failure is None
    assert state.step == 2

    state.complete()
    assert state.phase == Phase.PLAN
    assert state.step == 0
    assert state.target_phase is None


def test_exchanges_accumulate():
    state = RunState(feature_slug="add-caching")
    state.record_exchange(0.02)
    state.record_exchange(0.03)
    assert state.turns == 2
    assert state.cost_usd == pytest.approx(0.05)


def test_negative_cost_rejected():
    state = RunState(feature_slug="add-caching")
    with pytest.raises(ValueError):
        state.record_exchange(-1.0)


# ---------------------------------------------------------------------------
# TOML codec
# ---------------------------------------------------------------------------

def test_dump_uses_stable_field_names():
    state = RunState(feature_slug="add-caching", phase=Phase.RUN, step=3, turns=4, cost_usd=0.25)
    state.begin(Phase.VERIFY)
    state.fail("tests_failed", 'tests failed: 2 of 10 failed "quoted"')
    text = dumps_state(state)

    assert 'feature_slug = "add-caching"' in text
    assert 'phase = "Run"' in text
    assert 'target_phase = "Verify"' in text
    assert "turns = 4" in text
    assert "cost_usd = 0.25" in text
    assert "[failure]" in text

    loaded = loads_state("add-caching", text)
    assert loaded == state


def test_no_failure_table_when_clean():
    text = dumps_state(RunState(feature_slug="add-caching"))
    assert "[failure]" not in text
    assert "target_phase" not in text


@pytest.mark.parametrize("text", [
    "this is = not [ toml",
    'feature_slug = "add-caching"\nphase = "Deploy"\n',
    'feature_slug = "add-caching"\nstep = -1\n',
    'feature_slug = "add-caching"\nupdated_at = "yesterday"\n',
    'phase = "Init"\n',
])
def test_malformed_records_are_corrupted(text):
    with pytest.raises(CorruptedState) as exc:
        loads_state("add-caching", text)
    assert exc.value.feature_slug == "add-caching"


def test_record_for_another_slug_is_corrupted():
    text = dumps_state(RunState(feature_slug="other-feature"))
    with pytest.raises(CorruptedState, match="other-feature"):
        loads_state("add-caching", text)
