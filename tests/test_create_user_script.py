import importlib.util
from pathlib import Path

import pytest

from loginguard.service.errors import ValidationError
from loginguard.service.runtime import get_runtime

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "create_user.py"


@pytest.fixture
def create_user_module():
    spec = importlib.util.spec_from_file_location("create_user", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestCreateUserScript:
    def test_creates_user_with_history(self, create_user_module):
        result = create_user_module.create_user("ops@example.com", "Provisioned-Pass1!")

        assert result["status"] == "created"
        runtime = get_runtime()
        user = runtime.credentials.find_by_id(result["user_id"])
        assert runtime.credentials.verify_password(user, "Provisioned-Pass1!")
        assert len(runtime.credentials.password_history(user, 10)) == 1

    def test_existing_user_is_left_alone(self, create_user_module):
        create_user_module.create_user("ops@example.com", "Provisioned-Pass1!")

        result = create_user_module.create_user("ops@example.com", "Another-Pass1!!")

        assert result["status"] == "exists"

    def test_dry_run_writes_nothing(self, create_user_module):
        result = create_user_module.create_user("dry@example.com", "Provisioned-Pass1!", dry_run=True)

        assert result["status"] == "dry_run"
        assert get_runtime().credentials.find_by_email("dry@example.com") is None

    def test_weak_password_rejected(self, create_user_module):
        with pytest.raises(ValidationError):
            create_user_module.create_user("weak@example.com", "short")
