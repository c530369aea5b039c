import importlib.util
from pathlib import Path

import pytest

from galleryauth.service.runtime import get_runtime
from galleryauth.storage.models import Role

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture
def script():
    spec = importlib.util.spec_from_file_location("bootstrap_admin_script", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


async def test_default_admin_is_provisioned_once(script):
    first = await script.bootstrap_default()
    second = await script.bootstrap_default()

    assert first["status"] == "created"
    assert first["email"] == "admin@elouarate.com"
    assert get_runtime().store.get_principal(first["principal_id"]).role == Role.ADMIN
    assert second == {"principal_id": None, "status": "skipped"}


async def test_new_admin_is_created(script):
    result = await script.bootstrap_admin("director@example.com", "Gallery@2024x")

    assert result["status"] == "created"
    assert result["access_token"]
    assert get_runtime().store.get_principal_by_email("director@example.com").is_admin


async def test_existing_account_is_promoted(script):
    runtime = get_runtime()
    registered = await runtime.auth.register("curator@example.com", "Gallery@2024x")

    dry = await script.bootstrap_admin("curator@example.com", "Gallery@2024x", dry_run=True)
    assert dry["status"] == "dry_run"
    assert runtime.store.get_principal(registered.principal.id).role == Role.USER

    result = await script.bootstrap_admin("curator@example.com", "Gallery@2024x")
    assert result["status"] == "promoted"
    assert runtime.store.get_principal(registered.principal.id).role == Role.ADMIN

    again = await script.bootstrap_admin("curator@example.com", "Gallery@2024x")
    assert again["status"] == "already_admin"
