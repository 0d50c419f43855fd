import copy

import pytest

from notified.config import (
    DEFAULT_CONFIG,
    ConfigError,
    bootstrap_runtime_config,
    get_runtime_config,
    load_config_file,
    load_runtime_config,
    set_runtime_config,
)
from notified.storage import init_db


def test_bootstrap_creates_runtime_config(conn):
    cfg = bootstrap_runtime_config(conn)
    assert cfg == DEFAULT_CONFIG


def test_get_runtime_config_after_set(conn):
    custom = copy.deepcopy(DEFAULT_CONFIG)
    custom["delivery"]["max_articles_per_batch"] = 5
    set_runtime_config(conn, custom)
    cfg = get_runtime_config(conn)
    assert cfg["delivery"]["max_articles_per_batch"] == 5
    assert load_runtime_config(conn).delivery.max_articles_per_batch == 5


def test_set_runtime_config_rejects_invalid(conn):
    with pytest.raises(ConfigError) as excinfo:
        set_runtime_config(conn, {"app": {"name": "Bad"}})
    assert "Invalid config.runtime" in str(excinfo.value)
    assert "missing config.runtime.delivery" in str(excinfo.value)


def test_validation_checks_types_and_ranges(conn):
    bad = copy.deepcopy(DEFAULT_CONFIG)
    bad["delivery"]["user_concurrency"] = "four"
    bad["decay"]["surprise"] = True
    with pytest.raises(ConfigError) as excinfo:
        set_runtime_config(conn, bad)
    message = str(excinfo.value)
    assert "delivery.user_concurrency must be an integer" in message
    assert "unknown config.runtime.decay.surprise" in message

    out_of_range = copy.deepcopy(DEFAULT_CONFIG)
    out_of_range["decay"]["default_decay_factor"] = 1.5
    with pytest.raises(ConfigError):
        set_runtime_config(conn, out_of_range)


def test_typed_config_defaults(conn):
    config = load_runtime_config(conn)
    assert config.delivery.max_articles_per_batch == 3
    assert config.recommender.category_weight == 0.4
    assert config.recommender.recency_window_hours == 168.0
    assert config.decay.prune_threshold == 0.1
    assert "SPORTS" in config.recommender.default_categories


def test_yaml_file_seeds_runtime_config(tmp_path, monkeypatch):
    path = tmp_path / "config.yml"
    path.write_text(
        "delivery:\n  max_articles_per_batch: 2\nchannels:\n  email:\n    smtp_host: mail.local\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("NF_CONFIG_PATH", str(path))
    conn = init_db(str(tmp_path / "seeded.sqlite3"))
    config = load_runtime_config(conn)
    assert config.delivery.max_articles_per_batch == 2
    assert config.delivery.per_category_limit == 10
    assert config.channels.email.smtp_host == "mail.local"
    conn.close()


def test_load_config_file_errors(tmp_path):
    with pytest.raises(ConfigError):
        load_config_file(str(tmp_path / "missing.yml"))
    path = tmp_path / "list.yml"
    path.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config_file(str(path))
