from config import Settings


def test_defaults():
    settings = Settings(_env_file=None)
    assert settings.database_path == "contacts.db"
    assert settings.accept_client_ids is True
    assert settings.union_max_retries == 5


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("DATABASE_PATH", "/tmp/other.db")
    monkeypatch.setenv("UNION_MAX_RETRIES", "9")
    monkeypatch.setenv("ACCEPT_CLIENT_IDS", "false")

    settings = Settings(_env_file=None)

    assert settings.database_path == "/tmp/other.db"
    assert settings.union_max_retries == 9
    assert settings.accept_client_ids is False
