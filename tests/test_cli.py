"""
tests/test_cli.py -- Management CLI commands against an isolated store.
"""

from __future__ import annotations

import json

from auth.tokens import verify_password
from conftest import add_account, make_store
from main import main


def test_init_db_seeds_roles() -> None:
    store = make_store("cli_init")
    store.delete_role("support")
    try:
        assert main(["init-db"], store=store) == 0
        assert store.get_role("support") is not None
    finally:
        store.close()


def test_init_db_roles_file_overwrites(tmp_path, store) -> None:
    path = tmp_path / "roles.json"
    path.write_text(json.dumps({"support": ["order:read"]}))
    assert main(["init-db", "--roles-file", str(path)], store=store) == 0
    assert store.get_role("support").permissions == ["order:read"]


def test_create_account(store, capsys) -> None:
    code = main(
        ["create-account", "--email", "Ops@Example.com", "--name", "Ops", "--role", "super_admin",
         "--password", "bootstrap-pass"],
        store=store,
    )
    assert code == 0
    account = store.get_by_email("ops@example.com")
    assert account.role_keys == ["super_admin"]
    assert account.is_verified
    assert verify_password("bootstrap-pass", account.hashed_password)
    assert "Created account" in capsys.readouterr().out


def test_create_account_prompts_for_password(store, monkeypatch) -> None:
    monkeypatch.setattr("getpass.getpass", lambda prompt="": "prompted-pass")
    assert main(["create-account", "--email", "prompt@example.com"], store=store) == 0
    assert verify_password("prompted-pass", store.get_by_email("prompt@example.com").hashed_password)


def test_create_account_rejects_unknown_role(store) -> None:
    args = ["create-account", "--email", "x@example.com", "--role", "wizard", "--password", "bootstrap-pass"]
    assert main(args, store=store) == 1
    assert store.get_by_email("x@example.com") is None


def test_create_account_rejects_short_password(store) -> None:
    assert main(["create-account", "--email", "x@example.com", "--password", "short"], store=store) == 1


def test_create_account_duplicate(store) -> None:
    add_account(store, "dup@example.com")
    assert main(["create-account", "--email", "dup@example.com", "--password", "bootstrap-pass"], store=store) == 1


def test_assign_role(store) -> None:
    add_account(store, "grow@example.com", roles=["support"])
    assert main(["assign-role", "--email", "grow@example.com", "--role", "moderator"], store=store) == 0
    assert store.get_by_email("grow@example.com").role_keys == ["moderator", "support"]
    assert main(["assign-role", "--email", "nobody@example.com", "--role", "moderator"], store=store) == 1


def test_list_roles(store, capsys) -> None:
    assert main(["list-roles"], store=store) == 0
    out = capsys.readouterr().out
    assert "super_admin" in out
    assert "user:read, order:read" in out
