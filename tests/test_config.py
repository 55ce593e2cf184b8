import importlib

from movierec import config


def test_env_overrides_and_validation(monkeypatch):
    monkeypatch.setenv("MOVIEREC_MAX_CONCURRENT", "0")  # min clamp
    monkeypatch.setenv("MOVIEREC_POPULARITY_WEIGHT", "0.1")
    monkeypatch.setenv("MOVIEREC_HTTP_TIMEOUT", "0.2")  # min clamp

    cfg = importlib.reload(config)

    assert cfg.MAX_CONCURRENT_FETCHES == 1
    assert cfg.POPULARITY_BOOST_WEIGHT == 0.1
    assert cfg.HTTP_TIMEOUT == 1.0


def test_db_path_respects_env(monkeypatch, tmp_path):
    db_path = tmp_path / "custom.db"
    monkeypatch.setenv("MOVIEREC_DB", str(db_path))

    cfg = importlib.reload(config)

    assert cfg.DB_PATH == db_path


def test_invalid_env_values_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("MOVIEREC_MAX_CONCURRENT", "bad-int")
    monkeypatch.setenv("MOVIEREC_POPULARITY_WEIGHT", "oops")

    cfg = importlib.reload(config)

    assert cfg.MAX_CONCURRENT_FETCHES == 4
    assert cfg.POPULARITY_BOOST_WEIGHT == 0.05


def test_extreme_weight_env(monkeypatch):
    monkeypatch.setenv("MOVIEREC_EXTREME_WEIGHT", "0.5")  # min clamp
    assert importlib.reload(config).EXTREME_RATING_WEIGHT == 1.0

    monkeypatch.setenv("MOVIEREC_EXTREME_WEIGHT", "3")
    assert importlib.reload(config).EXTREME_RATING_WEIGHT == 3.0

    monkeypatch.delenv("MOVIEREC_EXTREME_WEIGHT")
    assert importlib.reload(config).EXTREME_RATING_WEIGHT == 2.0
