import pytest

from conftest import SESSION_ID, make_gate
from ideatank.data.session_store import session_code_path, session_path
from ideatank.errors import GateError
from ideatank.services.access_gate import GateOutcome
from ideatank.services.admin_login import AdminLogin, LoginOutcome
from ideatank.services.attempt_throttle import AttemptThrottle, ThrottleSettings
from ideatank.utils.identifiers import (
    SESSION_CODE_ALPHABET,
    SESSION_CODE_LENGTH,
    generate_session_code,
)
from ideatank.utils.local_state import LocalStateFile
from ideatank.utils.security import get_password_hash


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def _open_session(store, code="ABC123", session_id=SESSION_ID, active=True):
    await store.set_document(
        session_path(session_id), {"isActive": active, "accessCode": code}
    )
    await store.set_document(
        session_code_path(code), {"code": code, "sessionId": session_id}
    )


def test_throttle_locks_after_max_failures():
    clock = FakeClock()
    throttle = AttemptThrottle(ThrottleSettings(True, 3, 30), clock=clock)

    assert throttle.record_failure("10.0.0.1") == (False, 0)
    assert throttle.record_failure("10.0.0.1") == (False, 0)
    assert throttle.record_failure("10.0.0.1") == (True, 30)
    assert throttle.check("10.0.0.1") == (True, 30)
    assert throttle.check("10.0.0.2") == (False, 0)

    clock.advance(29.5)
    assert throttle.check("10.0.0.1") == (True, 1)

    clock.advance(0.5)
    assert throttle.check("10.0.0.1") == (False, 0)
    assert throttle.failures("10.0.0.1") == 0


def test_throttle_success_resets_count():
    throttle = AttemptThrottle(ThrottleSettings(True, 3, 30), clock=FakeClock())
    throttle.record_failure()
    throttle.record_failure()
    throttle.record_success()

    assert throttle.record_failure() == (False, 0)
    assert throttle.failures() == 1


def test_throttle_disabled_never_locks():
    throttle = AttemptThrottle(ThrottleSettings(False, 1, 30), clock=FakeClock())
    for _ in range(5):
        assert throttle.record_failure() == (False, 0)
    assert throttle.check() == (False, 0)


def test_throttle_lockout_survives_restart(tmp_path):
    clock = FakeClock()
    state = LocalStateFile(tmp_path / "lockout.json")
    throttle = AttemptThrottle(ThrottleSettings(True, 2, 60), clock=clock, state_file=state)
    throttle.record_failure("admin-host")
    throttle.record_failure("admin-host")

    restarted = AttemptThrottle(ThrottleSettings(True, 2, 60), clock=clock, state_file=state)

    assert restarted.check("admin-host") == (True, 60)



def test_throttle_forgets_idle_and_expired_callers():
    clock = FakeClock()
    throttle = AttemptThrottle(
        ThrottleSettings(True, 3, 30, failure_ttl_seconds=60), clock=clock
    )
    for index in range(10):
        throttle.record_failure(f"10.0.0.{index}")
    for _ in range(3):
        throttle.record_failure("10.0.1.1")
    assert throttle.tracked_keys == 11

    clock.advance(61)

    assert throttle.check("10.0.2.2") == (False, 0)
    assert throttle.tracked_keys == 0


@pytest.mark.anyio("asyncio")
async def test_gate_admits_case_insensitive_code(store):
    await _open_session(store)
    gate = make_gate(store)

    result = await gate.check_code("abc123", caller="phone")

    assert result.outcome is GateOutcome.ADMITTED
    assert result.session_id == SESSION_ID


@pytest.mark.anyio("asyncio")
async def test_gate_resolves_code_against_named_session(store):
    await store.set_document(session_path("other"), {"isActive": True, "accessCode": "XYZ789"})
    gate = make_gate(store)

    result = await gate.check_code(" xyz789 ", "other")

    assert result.admitted
    assert result.session_id == "other"


@pytest.mark.anyio("asyncio")
async def test_gate_lockout_blocks_correct_code_until_expiry(store):
    await _open_session(store)
    clock = FakeClock()
    gate = make_gate(store, clock=clock)

    first = await gate.check_code("abc124", caller="phone")
    second = await gate.check_code("abc124", caller="phone")
    third = await gate.check_code("abc124", caller="phone")
    assert [first.outcome, second.outcome, third.outcome] == [GateOutcome.REJECTED] * 3
    assert third.remaining_seconds == 30

    locked = await gate.check_code("ABC123", caller="phone")
    assert locked.outcome is GateOutcome.LOCKED_OUT
    assert locked.remaining_seconds == 30

    clock.advance(30)
    admitted = await gate.check_code("ABC123", caller="phone")
    assert admitted.outcome is GateOutcome.ADMITTED


@pytest.mark.anyio("asyncio")
async def test_gate_lockout_skips_store_lookup(flaky_store):
    await _open_session(flaky_store)
    gate = make_gate(flaky_store)
    for _ in range(3):
        await gate.check_code("WRONG1", caller="phone")

    flaky_store.failing.add("get_document")
    result = await gate.check_code("ABC123", caller="phone")

    assert result.outcome is GateOutcome.LOCKED_OUT


@pytest.mark.anyio("asyncio")
async def test_gate_reports_closed_session(store):
    await _open_session(store, active=False)
    gate = make_gate(store)

    result = await gate.check_code("ABC123")

    assert result.outcome is GateOutcome.SESSION_CLOSED
    assert gate.throttle.failures() == 0


@pytest.mark.anyio("asyncio")
async def test_gate_short_code_counts_as_failure(store):
    gate = make_gate(store)

    result = await gate.check_code("ab")

    assert result.outcome is GateOutcome.REJECTED
    assert gate.throttle.failures() == 1


@pytest.mark.anyio("asyncio")
async def test_register_code_releases_previous_code(store):
    gate = make_gate(store)
    await gate.register_code(SESSION_ID, "first1")

    code = await gate.register_code(SESSION_ID, "second2")

    assert code == "SECOND2"
    assert await store.get_document(session_code_path("FIRST1")) is None
    entry = await store.get_document(session_code_path("SECOND2"))
    assert entry["sessionId"] == SESSION_ID
    session = await store.get_document(session_path(SESSION_ID))
    assert session["accessCode"] == "SECOND2"


@pytest.mark.anyio("asyncio")
async def test_register_code_refuses_code_of_active_session(store):
    await _open_session(store, code="TAKEN1", session_id="live-one")
    gate = make_gate(store)

    with pytest.raises(GateError):
        await gate.register_code(SESSION_ID, "taken1")


@pytest.mark.anyio("asyncio")
async def test_register_code_takes_over_inactive_holder(store):
    await _open_session(store, code="SHARED", session_id="old-one", active=False)
    gate = make_gate(store)

    await gate.register_code(SESSION_ID, "shared")

    old = await store.get_document(session_path("old-one"))
    assert old["accessCode"] is None
    assert (await gate.check_code("shared")).outcome is GateOutcome.SESSION_CLOSED


@pytest.mark.anyio("asyncio")
async def test_register_code_rejects_short_code(store):
    gate = make_gate(store)

    with pytest.raises(GateError):
        await gate.register_code(SESSION_ID, "ab")


def _admin_login(tmp_path, clock):
    throttle = AttemptThrottle(
        ThrottleSettings(True, 3, 30),
        clock=clock,
        state_file=LocalStateFile(tmp_path / "admin.json"),
    )
    return AdminLogin("admin", get_password_hash("s3cret!"), throttle)


def test_admin_login_success_and_lockout(tmp_path):
    clock = FakeClock()
    login = _admin_login(tmp_path, clock)

    assert login.authenticate("Admin", "s3cret!").ok
    assert login.authenticate("admin", "nope").outcome is LoginOutcome.INVALID
    assert login.authenticate("admin", "nope").outcome is LoginOutcome.INVALID
    locked = login.authenticate("admin", "nope")
    assert locked.outcome is LoginOutcome.LOCKED_OUT
    assert locked.remaining_seconds == 30

    assert login.authenticate("admin", "s3cret!").outcome is LoginOutcome.LOCKED_OUT

    clock.advance(31)
    assert login.authenticate("admin", "s3cret!").ok


def test_admin_login_without_hash_always_fails(tmp_path):
    throttle = AttemptThrottle(ThrottleSettings(True, 3, 30), clock=FakeClock())
    login = AdminLogin("admin", "", throttle)

    assert login.authenticate("admin", "").outcome is LoginOutcome.INVALID


def test_generated_session_codes_avoid_ambiguous_characters():
    codes = {generate_session_code() for _ in range(50)}

    assert all(len(code) == SESSION_CODE_LENGTH for code in codes)
    assert all(set(code) <= set(SESSION_CODE_ALPHABET) for code in codes)
    assert not any(char in code for code in codes for char in "IO01")
    assert len(codes) > 1


def test_admin_lockout_follows_username_and_caller(tmp_path):
    clock = FakeClock()
    login = _admin_login(tmp_path, clock)

    for host in ("10.0.0.1", "10.0.0.2", "10.0.0.3"):
        login.authenticate("admin", "nope", caller=host)
    moved = login.authenticate("admin", "s3cret!", caller="10.0.0.9")
    assert moved.outcome is LoginOutcome.LOCKED_OUT

    for name in ("root", "guest", "ops"):
        login.authenticate(name, "nope", caller="10.0.0.5")
    assert login.authenticate("beheer", "nope", caller="10.0.0.5").outcome is LoginOutcome.LOCKED_OUT
    assert login.authenticate("beheer", "nope", caller="10.0.0.6").outcome is LoginOutcome.INVALID

    clock.advance(31)
    assert login.authenticate("admin", "s3cret!", caller="10.0.0.9").ok
