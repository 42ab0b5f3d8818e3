"""Tests for JWT identity extraction."""

import pytest

from conftest import make_token
from log_tailer.identity import IdentityError, extract_identity
from log_tailer.models import ConfigError, Identity


class TestExtractIdentity:
    def test_user_only(self):
        assert extract_identity(make_token(sub="user-1")) == Identity("user-1", None)

    def test_agent_claim(self):
        token = make_token(sub="user-1", agent_id="agent-9")
        assert extract_identity(token) == Identity("user-1", "agent-9")

    def test_agent_from_user_metadata(self):
        token = make_token(sub="user-1", user_metadata={"agent_id": 77})
        assert extract_identity(token) == Identity("user-1", "77")

    def test_expired_token_still_decodes(self):
        token = make_token(sub="user-1", exp=1)
        assert extract_identity(token).user_id == "user-1"

    def test_missing_sub(self):
        with pytest.raises(IdentityError):
            extract_identity(make_token(role="authenticated"))

    def test_garbage_token(self):
        with pytest.raises(IdentityError):
            extract_identity("not-a-jwt")

    def test_empty_token(self):
        with pytest.raises(IdentityError):
            extract_identity("")

    def test_is_config_error(self):
        assert issubclass(IdentityError, ConfigError)
