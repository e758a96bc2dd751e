import pytest

from conftest import build_settings, make_account
from snapshots.accounts import AccountRegistry, resolve_quota, resolve_retention
from snapshots.errors import AccountNotFoundError, ConfigurationError
from snapshots.types import RetentionMode, RetentionPolicy

GIB = 1024 ** 3


def test_accounts_are_discovered_from_home_root(home_root):
    make_account(home_root, "alice")
    make_account(home_root, "bob")
    (home_root / "lost+found").mkdir()
    registry = AccountRegistry(build_settings(home_root))

    assert registry.names() == ["alice", "bob"]
    account = registry.get("alice")
    assert account.workspace == home_root / "alice" / "uploads"
    assert account.history == home_root / "alice" / "versions"
    assert account.quota_bytes is None
    assert account.retention == RetentionPolicy()


def test_unknown_account_raises(home_root):
    registry = AccountRegistry(build_settings(home_root))
    with pytest.raises(AccountNotFoundError):
        registry.get("mallory")


def test_explicit_entry_overrides_paths_quota_and_retention(home_root, tmp_path):
    settings = build_settings(
        home_root,
        quota={"default_limit_bytes": 5 * GIB},
        retention={"keep_daily": 3},
        accounts={
            "archive": {
                "workspace": str(tmp_path / "incoming"),
                "history": str(tmp_path / "sealed"),
                "quota_gb": 2,
                "retention": {"keep_monthly": 24},
            },
            "unlimited": {"quota_bytes": 0},
        },
    )
    registry = AccountRegistry(settings)

    archive = registry.get("archive")
    assert archive.workspace == tmp_path / "incoming"
    assert archive.quota_bytes == 2 * GIB
    assert archive.retention == RetentionPolicy.gfs(keep_daily=3, keep_weekly=4, keep_monthly=24)
    assert registry.get("unlimited").quota_bytes is None

    policy = registry.effective_policy("archive")
    assert policy["retention"] == {"mode": "gfs", "keep_daily": 3, "keep_weekly": 4, "keep_monthly": 24}


def test_malformed_override_falls_back(home_root, caplog):
    make_account(home_root, "alice")
    settings = build_settings(
        home_root,
        quota={"default_limit_bytes": 1000},
        accounts={"alice": {"quota_bytes": "lots", "retention": {"mode": "forever"}}},
    )

    with caplog.at_level("WARNING", logger="vaultsnap.accounts"):
        account = AccountRegistry(settings).get("alice")

    assert account.quota_bytes == 1000
    assert account.retention.mode is RetentionMode.GFS
    assert "invalid retention override" in caplog.text
    assert "invalid quota" in caplog.text


def test_malformed_quota_gb_uses_default_limit(home_root):
    make_account(home_root, "bob")
    settings = build_settings(
        home_root,
        quota={"default_limit_bytes": 5 * GIB},
        accounts={"bob": {"quota_gb": "plenty"}},
    )

    assert AccountRegistry(settings).get("bob").quota_bytes == 5 * GIB


def test_account_for_path(home_root, tmp_path):
    make_account(home_root, "alice")
    registry = AccountRegistry(
        build_settings(home_root, accounts={"archive": {"workspace": str(tmp_path / "incoming")}})
    )

    assert registry.account_for_path(home_root / "alice" / "uploads" / "a" / "b.txt").name == "alice"
    assert registry.account_for_path(home_root / "alice" / "versions" / "x") is None
    assert registry.account_for_path(tmp_path / "incoming" / "doc.pdf").name == "archive"
    assert registry.account_for_path(tmp_path / "elsewhere.txt") is None


def test_resolution_helpers():
    assert resolve_retention({"mode": "age", "max_age_days": 14}).max_age_days == 14
    with pytest.raises(ConfigurationError):
        resolve_retention({"keep_daily": -1})
    assert resolve_quota(None) is None
    assert resolve_quota(100, {"quota_gb": 0.5}) == GIB // 2
    with pytest.raises(ConfigurationError):
        resolve_quota("abc")
