import pytest
from pydantic import ValidationError

from crudclient.settings import Settings, load_settings


def test_defaults():
    settings = Settings()
    assert settings.base_url == "http://localhost:4000/api/v1/"
    assert settings.max_retries == 2
    assert settings.token_lifetime_minutes == 55
    assert settings.credential_db_url is None


def test_env_aliases_and_field_names_both_populate():
    by_alias = Settings.model_validate({"API_URL": "https://crud.example", "API_VERSION": "v2"})
    by_name = Settings(api_url="https://crud.example", api_version="v2")
    assert by_alias.base_url == by_name.base_url == "https://crud.example/api/v2/"


def test_trailing_slash_is_stripped():
    settings = Settings(api_url="https://crud.example/", api_prefix="/rest/")
    assert settings.base_url == "https://crud.example/rest/v1/"


@pytest.mark.parametrize("url", ["crud.example", "ftp://crud.example", "http://"])
def test_invalid_api_url_is_rejected(url):
    with pytest.raises(ValidationError):
        Settings(api_url=url)


def test_non_positive_timeout_is_rejected():
    with pytest.raises(ValidationError):
        Settings(api_timeout=0)


def test_load_settings_reads_environment(monkeypatch):
    monkeypatch.setenv("API_URL", "https://env.example")
    monkeypatch.setenv("API_MAX_RETRIES", "5")
    monkeypatch.setenv("TOKEN_ENCODE", "true")

    settings = load_settings()

    assert settings.api_url == "https://env.example"
    assert settings.max_retries == 5
    assert settings.token_encode is True
