import importlib.util
from pathlib import Path

from sessiongate.service.runtime import get_runtime

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_user.py"
_script_spec = importlib.util.spec_from_file_location("bootstrap_user", _SCRIPT)
bootstrap = importlib.util.module_from_spec(_script_spec)
_script_spec.loader.exec_module(bootstrap)

PASSWORD = "Bootstrap-Password-1"


class TestBootstrapUser:
    def test_password_rules(self):
        assert bootstrap.validate_password(PASSWORD)
        assert not bootstrap.validate_password("short1!")
        assert not bootstrap.validate_password("alllowercaseletters")

    def test_parse_roles(self):
        assert bootstrap.parse_roles(" admin, member ,,") == ["admin", "member"]
        assert bootstrap.parse_roles(None) == []

    def test_creates_verified_user_who_can_log_in(self):
        result = bootstrap.bootstrap_user("ops@example.com", PASSWORD, ["admin"])

        runtime = get_runtime()
        user = runtime.store.get_user(result["user_id"])
        assert result["status"] == "created"
        assert user.email_verified
        assert user.role_ids == ["admin"]
        assert runtime.login.verify_password(user.id, PASSWORD)

    def test_existing_user_gets_password_reset(self):
        bootstrap.bootstrap_user("ops@example.com", PASSWORD, [])

        result = bootstrap.bootstrap_user("ops@example.com", "Another-Password-2", [])

        assert result["status"] == "updated"
        assert get_runtime().login.verify_password(result["user_id"], "Another-Password-2")

    def test_dry_run_changes_nothing(self):
        result = bootstrap.bootstrap_user("ops@example.com", PASSWORD, ["admin"], dry_run=True)

        assert result["status"] == "dry_run"
        assert get_runtime().store.get_user_by_email("ops@example.com") is None
