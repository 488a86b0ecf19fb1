"""Tests for shared models, configuration, logging and schema helpers."""

import pytest


class TestModels:
    """Tests for core models."""

    def test_tool_id_round_trip(self):
        """Test tool ids carry the server id and the tool name."""
        from shared.models import make_tool_id, split_tool_id

        tool_id = make_tool_id("filesystem", "read_file")

        assert tool_id == "filesystem::read_file"
        assert split_tool_id(tool_id) == ("filesystem", "read_file")
        assert split_tool_id("bare") == ("", "bare")

    def test_provider_object_keeps_unknown_fields(self):
        """Test unknown provider fields are stored and written back."""
        from shared.models import TokenSet

        tokens = TokenSet.model_validate({
            "access_token": "at",
            "expires_in": 3600,
            "id_token": "jwt",
        })

        assert tokens.extra == {"id_token": "jwt"}
        assert tokens.to_wire() == {"access_token": "at", "expires_in": 3600, "id_token": "jwt"}

    def test_provider_object_reload(self):
        """Test a dumped provider object validates back unchanged."""
        from shared.models import OAuthClientInfo

        info = OAuthClientInfo.model_validate({"client_id": "c", "registration_access_token": "r"})
        reloaded = OAuthClientInfo.model_validate(info.model_dump())

        assert reloaded == info

    def test_tool_record_from_descriptor(self):
        """Test a discovered tool starts unclassified."""
        from shared.models import ToolDescriptor, ToolRecord

        record = ToolRecord.from_descriptor("fs", ToolDescriptor(name="read_file"))

        assert record.id == "fs::read_file"
        assert record.is_read is None
        assert not record.is_analyzed

    def test_server_config_allows_extra_keys(self):
        """Test launch configs keep fields the host does not interpret."""
        from shared.models import ServerConfig

        config = ServerConfig.model_validate({"command": "node", "transport": "stdio"})

        assert config.model_dump()["transport"] == "stdio"


class TestErrors:
    """Tests for the error taxonomy."""

    def test_status_codes(self):
        """Test each error kind maps to its HTTP status."""
        from shared.errors import (
            ConflictError,
            NotFoundError,
            UpstreamUnavailable,
            ValidationError,
        )

        assert ValidationError("x").status_code == 422
        assert ConflictError("x").status_code == 409
        assert NotFoundError("x").status_code == 404
        assert UpstreamUnavailable("x").status_code == 502

    def test_to_dict(self):
        """Test error serialization includes details when present."""
        from shared.errors import NotFoundError

        assert NotFoundError("missing", server_id="fs").to_dict() == {
            "error": "missing",
            "error_code": "NOT_FOUND",
            "details": {"server_id": "fs"},
        }
        assert "details" not in NotFoundError("missing").to_dict()


class TestConfig:
    """Tests for settings loading."""

    def test_defaults(self):
        """Test defaults without a config file."""
        from shared.config import Settings

        settings = Settings()

        assert settings.ollama.general_model == "phi3:3.8b"
        assert settings.oauth.token_mappings["slack-browser"].secondary == "SLACK_MCP_XOXD_TOKEN"
        assert settings.events.heartbeat_interval == 1.0

    def test_from_yaml(self, tmp_path):
        """Test nested sections load from YAML."""
        from shared.config import Settings

        path = tmp_path / "settings.yaml"
        path.write_text(
            "environment: production\n"
            "ollama:\n"
            "  host: http://127.0.0.1:11434\n"
            "registry:\n"
            "  backend: memory\n"
        )

        settings = Settings.from_yaml(path)

        assert settings.environment == "production"
        assert settings.ollama.host == "http://127.0.0.1:11434"
        assert settings.registry.backend == "memory"

    def test_missing_yaml(self, tmp_path):
        """Test a missing config file yields an empty mapping."""
        from shared.config import load_yaml_config

        assert load_yaml_config(tmp_path / "absent.yaml") == {}


class TestLogging:
    """Tests for log redaction."""

    def test_secrets_redacted(self):
        """Test token values are masked at any depth."""
        from shared.logging import redact_secrets

        event = redact_secrets(None, "info", {
            "event": "Token exchanged",
            "server_id": "github",
            "access_token": "gho_abc",
            "body": {"client_secret": "s3cret", "grant_type": "authorization_code"},
            "items": [{"refresh_token": "rt"}],
        })

        assert event["server_id"] == "github"
        assert event["access_token"] == "[REDACTED]"
        assert event["body"]["client_secret"] == "[REDACTED]"
        assert event["body"]["grant_type"] == "authorization_code"
        assert event["items"][0]["refresh_token"] == "[REDACTED]"

    def test_empty_secret_left_alone(self):
        """Test empty values are not replaced."""
        from shared.logging import redact_secrets

        assert redact_secrets(None, "info", {"token": None})["token"] is None


class TestSchema:
    """Tests for JSON Schema helpers."""

    def test_validate_schema_errors(self):
        """Test errors name the failing path."""
        from shared.schema import validate_schema

        schema = {
            "type": "object",
            "properties": {"path": {"type": "string"}},
            "required": ["path"],
        }

        assert validate_schema({"path": "/tmp"}, schema) == (True, [])

        is_valid, errors = validate_schema({"path": 1}, schema)
        assert not is_valid
        assert errors[0].startswith("path:")

    def test_empty_schema_accepts_anything(self):
        """Test a missing schema never rejects arguments."""
        from shared.schema import validate_schema

        assert validate_schema({"anything": True}, {}) == (True, [])

    @pytest.mark.parametrize("schema", [None, {}, "not-a-schema"])
    def test_clean_input_schema_fallback(self, schema):
        """Test unusable schemas become empty."""
        from shared.schema import clean_input_schema

        assert clean_input_schema(schema) == {}

    def test_clean_input_schema_copy(self):
        """Test a usable schema is copied."""
        from shared.schema import clean_input_schema

        schema = {"type": "object", "properties": {"q": {"type": "string"}}}
        cleaned = clean_input_schema(schema)

        assert cleaned == schema
        assert cleaned is not schema
