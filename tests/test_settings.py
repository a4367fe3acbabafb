"""Tests for environment-backed settings."""

from venuelink.settings import Settings


class TestSettings:
    def test_defaults(self) -> None:
        settings = Settings()

        assert settings.retry_max == 3
        assert settings.batch_delay == 0.05
        assert settings.token_refresh_margin == 60.0
        assert settings.wire_key_case == "camel"

    def test_environment_names_populate_fields(self) -> None:
        # Given: values as they appear in the process environment
        env = {
            "API_BASE_URL": "https://api.example.com/v2",
            "RETRY_MAX": "5",
            "WS_HEARTBEAT_INTERVAL": "0",
            "DEBUG": "true",
            "UNRELATED_VARIABLE": "ignored",
        }

        # When
        settings = Settings.model_validate(env)

        # Then: strings are coerced and unknown variables ignored
        assert settings.api_base_url == "https://api.example.com/v2"
        assert settings.retry_max == 5
        assert settings.ws_heartbeat_interval == 0.0
        assert settings.debug is True

    def test_field_names_are_accepted_too(self) -> None:
        settings = Settings(cache_max_size=10)

        assert settings.cache_max_size == 10
