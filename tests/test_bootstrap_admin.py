from scripts.bootstrap_admin import bootstrap_admin, validate_password
from storeguard.service.runtime import Runtime

PASSWORD = "Secure-Password-123"


def test_password_policy():
    assert validate_password(PASSWORD)
    assert not validate_password("short-1A")
    assert not validate_password("alllowercaseletters")


def test_creates_admin_once(settings, passwords):
    runtime = Runtime(settings, passwords=passwords)

    created = bootstrap_admin(runtime, "ops@example.com", PASSWORD)
    again = bootstrap_admin(runtime, "ops@example.com", PASSWORD)

    assert created["status"] == "created"
    assert runtime.store.get_identity(created["identity_id"]).is_admin
    assert again == {**created, "status": "already_admin"}


def test_existing_non_admin_is_reported(settings, passwords):
    runtime = Runtime(settings, passwords=passwords)
    runtime.auth.register("shopper@example.com", PASSWORD)

    result = bootstrap_admin(runtime, "shopper@example.com", PASSWORD)

    assert result["status"] == "exists_not_admin"


def test_dry_run_creates_nothing(settings, passwords):
    runtime = Runtime(settings, passwords=passwords)

    result = bootstrap_admin(runtime, "ops@example.com", PASSWORD, dry_run=True)

    assert result["status"] == "dry_run"
    assert runtime.store.get_identity_by_email("ops@example.com") is None
