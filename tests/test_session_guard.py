import unittest
from datetime import datetime, timezone
from unittest import mock

from qwebif.csrf import CSRF_SESSION_KEY, csrf_field, current_token, validate
from qwebif.privilege import PrivilegeLevel, has_privilege, privilege_for_user, resolve_privilege
from qwebif.session import (
    PENDING_KEY,
    PendingOperation,
    SessionRegistry,
    end_session,
    pop_pending_operation,
    session_id,
    set_pending_operation,
    start_session,
)


class TestPrivilege(unittest.TestCase):
    def test_parse_names_and_numbers(self) -> None:
        self.assertIs(PrivilegeLevel.parse("admin"), PrivilegeLevel.ADMIN)
        self.assertIs(PrivilegeLevel.parse(" Guest "), PrivilegeLevel.GUEST)
        self.assertIs(PrivilegeLevel.parse(2), PrivilegeLevel.ADMIN)
        self.assertIs(PrivilegeLevel.parse("1"), PrivilegeLevel.GUEST)

    def test_parse_garbage_is_none(self) -> None:
        for value in (None, "", "root", 7, -1, True, 2.0, ["admin"]):
            with self.subTest(value=value):
                self.assertIs(PrivilegeLevel.parse(value), PrivilegeLevel.NONE)

    def test_anonymous_session_has_no_privilege(self) -> None:
        self.assertIs(resolve_privilege(None), PrivilegeLevel.NONE)
        self.assertIs(resolve_privilege({}), PrivilegeLevel.NONE)
        self.assertIs(resolve_privilege({"privilege": 2}), PrivilegeLevel.NONE)

    def test_resolves_stored_level(self) -> None:
        session = {"user": "ops", "privilege": 2}

        self.assertIs(resolve_privilege(session), PrivilegeLevel.ADMIN)
        self.assertTrue(has_privilege(session, PrivilegeLevel.ADMIN))
        self.assertFalse(has_privilege({"user": "ops", "privilege": 1}, PrivilegeLevel.ADMIN))

    def test_privilege_for_user(self) -> None:
        self.assertIs(privilege_for_user("admin", ["admin"]), PrivilegeLevel.ADMIN)
        self.assertIs(privilege_for_user("viewer", ["admin"]), PrivilegeLevel.GUEST)


class TestCsrf(unittest.TestCase):
    def test_current_token_is_stable(self) -> None:
        session: dict = {}
        token = current_token(session)

        self.assertTrue(token)
        self.assertEqual(current_token(session), token)
        self.assertEqual(session[CSRF_SESSION_KEY], token)

    def test_validate(self) -> None:
        session = {CSRF_SESSION_KEY: "abc123"}

        self.assertTrue(validate(session, "abc123"))
        self.assertFalse(validate(session, "wrong"))
        self.assertFalse(validate(session, ""))
        self.assertFalse(validate(session, None))
        self.assertFalse(validate(session, ["abc123"]))

    def test_validate_without_session_token_never_mints_one(self) -> None:
        session: dict = {}

        self.assertFalse(validate(session, "abc123"))
        self.assertNotIn(CSRF_SESSION_KEY, session)

    def test_validation_does_not_rotate(self) -> None:
        session = {CSRF_SESSION_KEY: "abc123"}
        validate(session, "wrong")
        validate(session, "abc123")

        self.assertEqual(session[CSRF_SESSION_KEY], "abc123")

    def test_csrf_field_renders_hidden_input(self) -> None:
        session = {CSRF_SESSION_KEY: "abc123"}

        self.assertEqual(str(csrf_field(session)), '<input type="hidden" name="csrf_token" value="abc123" />')


class TestSession(unittest.TestCase):
    def setUp(self) -> None:
        self.registry = SessionRegistry(max_age=3600)

    def test_start_session_resets_state(self) -> None:
        session = {"user": "old", PENDING_KEY: {"kind": "restore_full"}, CSRF_SESSION_KEY: "old-token"}

        start_session(session, self.registry, "admin", PrivilegeLevel.ADMIN)

        self.assertEqual(session["user"], "admin")
        self.assertEqual(session["privilege"], 2)
        self.assertNotIn(PENDING_KEY, session)
        self.assertNotEqual(session[CSRF_SESSION_KEY], "old-token")
        self.assertTrue(self.registry.is_live(session_id(session)))

    def test_new_session_gets_new_token(self) -> None:
        first: dict = {}
        second: dict = {}
        start_session(first, self.registry, "admin", PrivilegeLevel.ADMIN)
        start_session(second, self.registry, "admin", PrivilegeLevel.ADMIN)

        self.assertNotEqual(first[CSRF_SESSION_KEY], second[CSRF_SESSION_KEY])
        self.assertNotEqual(session_id(first), session_id(second))

    def test_relogin_retires_previous_id(self) -> None:
        session: dict = {}
        start_session(session, self.registry, "admin", PrivilegeLevel.ADMIN)
        old_sid = session_id(session)
        start_session(session, self.registry, "admin", PrivilegeLevel.ADMIN)

        self.assertFalse(self.registry.is_live(old_sid))
        self.assertTrue(self.registry.is_live(session_id(session)))

    def test_end_session_clears_and_retires_id(self) -> None:
        session: dict = {}
        start_session(session, self.registry, "admin", PrivilegeLevel.ADMIN)
        sid = session_id(session)
        end_session(session, self.registry)

        self.assertEqual(session, {})
        self.assertFalse(self.registry.is_live(sid))

    def test_expired_session_is_not_live(self) -> None:
        registry = SessionRegistry(max_age=60)
        with mock.patch("qwebif.session.time.monotonic", return_value=1000.0):
            registry.open("sid-1")
        with mock.patch("qwebif.session.time.monotonic", return_value=1030.0):
            self.assertTrue(registry.is_live("sid-1"))
        with mock.patch("qwebif.session.time.monotonic", return_value=1061.0):
            self.assertFalse(registry.is_live("sid-1"))
        self.assertFalse(registry.is_live("sid-1"))
        self.assertFalse(registry.is_live(None))

    def test_pending_operation_handoff(self) -> None:
        session: dict = {}
        start_session(session, self.registry, "admin", PrivilegeLevel.ADMIN)
        stamp = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        operation = PendingOperation(kind="restore_keep_ip", requested_at=stamp, op_id="op-1")
        set_pending_operation(session, self.registry, operation)

        self.assertEqual(
            session[PENDING_KEY],
            {"kind": "restore_keep_ip", "requested_at": stamp.isoformat(), "op_id": "op-1"},
        )
        self.assertEqual(pop_pending_operation(session, self.registry), operation)
        self.assertIsNone(pop_pending_operation(session, self.registry))

    def test_replayed_record_is_consumed_once(self) -> None:
        session: dict = {}
        start_session(session, self.registry, "admin", PrivilegeLevel.ADMIN)
        set_pending_operation(session, self.registry, PendingOperation.now("restore_full"))
        replayed = dict(session)

        self.assertIsNotNone(pop_pending_operation(session, self.registry))
        self.assertIsNone(pop_pending_operation(replayed, self.registry))

    def test_record_from_another_session_is_rejected(self) -> None:
        owner: dict = {}
        other: dict = {}
        start_session(owner, self.registry, "admin", PrivilegeLevel.ADMIN)
        start_session(other, self.registry, "admin", PrivilegeLevel.ADMIN)
        set_pending_operation(owner, self.registry, PendingOperation.now("restore_full"))
        other[PENDING_KEY] = owner[PENDING_KEY]

        self.assertIsNone(pop_pending_operation(other, self.registry))
        self.assertIsNotNone(pop_pending_operation(owner, self.registry))

    def test_logout_drops_outstanding_record(self) -> None:
        session: dict = {}
        start_session(session, self.registry, "admin", PrivilegeLevel.ADMIN)
        set_pending_operation(session, self.registry, PendingOperation.now("restore_full"))
        replayed = dict(session)
        end_session(session, self.registry)

        self.assertIsNone(pop_pending_operation(replayed, self.registry))

    def test_pending_operation_requires_session(self) -> None:
        with self.assertRaises(ValueError):
            set_pending_operation({}, self.registry, PendingOperation.now("restore_full"))

    def test_malformed_pending_record_is_ignored(self) -> None:
        session: dict = {}
        start_session(session, self.registry, "admin", PrivilegeLevel.ADMIN)
        values = (
            True,
            "restore_full",
            {"kind": "restore_full"},
            {"kind": "", "requested_at": "x", "op_id": "a"},
            {"kind": "restore_full", "requested_at": "not-a-date", "op_id": "a"},
            {"kind": "restore_full", "requested_at": "2024-05-01T12:00:00+00:00"},
        )
        for value in values:
            with self.subTest(value=value):
                session[PENDING_KEY] = value
                self.assertIsNone(pop_pending_operation(session, self.registry))


if __name__ == "__main__":
    unittest.main()
