#!/usr/bin/env python3
"""
Tests for environment-driven configuration.

Run with: pytest tests/test_settings.py -v
"""

import pytest

from settings import DROP_PAYLOAD, PATROL, RECALL_DRONE, SEND_DRONE, Settings


class TestSettings:

    def test_defaults(self):
        settings = Settings()
        assert settings.mqtt_port == 1883
        assert settings.telemetry_topic == "drones/+/telemetry"
        assert settings.topic_for(SEND_DRONE) == "drone"
        assert settings.topic_for(DROP_PAYLOAD) == "drone/drop_payload"
        assert settings.topic_for(RECALL_DRONE) == "drone/recall_drone"
        assert settings.topic_for(PATROL) == "drone/patrol"
        assert settings.mqtt_client_id.startswith("dispatch-backend-")

    def test_client_ids_are_unique_per_instance(self):
        assert Settings().mqtt_client_id != Settings().mqtt_client_id

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///dispatch.db")
        monkeypatch.setenv("MQTT_BROKER_HOST", "broker.local")
        monkeypatch.setenv("MQTT_BROKER_PORT", "8883")
        monkeypatch.setenv("MQTT_USE_TLS", "true")
        monkeypatch.setenv("MQTT_CLIENT_ID", "dispatch-a")
        monkeypatch.setenv("MQTT_TOPIC_PATROL", "fleet/patrol")
        monkeypatch.setenv("AUTH_ENABLED", "TRUE")
        monkeypatch.setenv("JWT_ACCESS_SECRET", "s3cret")
        monkeypatch.setenv("AUDIT_TO_DATABASE", "false")
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")

        settings = Settings.from_env()

        assert settings.database_url == "sqlite+aiosqlite:///dispatch.db"
        assert settings.mqtt_host == "broker.local"
        assert settings.mqtt_port == 8883
        assert settings.mqtt_use_tls is True
        assert settings.mqtt_client_id == "dispatch-a"
        assert settings.topic_for(PATROL) == "fleet/patrol"
        assert settings.topic_for(SEND_DRONE) == "drone"
        assert settings.auth_enabled is True
        assert settings.jwt_secret == "s3cret"
        assert settings.audit_to_database is False
        assert settings.log_level == "DEBUG"

    def test_from_env_generates_client_id(self, monkeypatch):
        monkeypatch.delenv("MQTT_CLIENT_ID", raising=False)
        assert Settings.from_env().mqtt_client_id.startswith("dispatch-backend-")

    def test_unknown_command_family(self):
        with pytest.raises(KeyError):
            Settings().topic_for("self_destruct")
