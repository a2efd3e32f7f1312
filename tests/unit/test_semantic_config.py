import pytest

from findly.packages.common.findly_common import config
from findly.packages.common.findly_common.config import Settings
from findly.packages.semantic.findly_semantic.errors import QueryTooLarge
from findly.packages.semantic.findly_semantic.query import SemanticQueryEngine
from findly.packages.semantic.findly_semantic.registry import RegistryHolder


def test_settings_read_semantic_overrides_from_the_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SEMANTIC_MAX_METRICS", "3")
    monkeypatch.setenv("SEMANTIC_SQL_DIALECT", "postgres")

    loaded = Settings()

    assert loaded.SEMANTIC_MAX_METRICS == 3
    assert loaded.SEMANTIC_SQL_DIALECT == "postgres"
    assert set(Settings.model_fields) == {
        "SEMANTIC_SQL_DIALECT",
        "SEMANTIC_MEGA_TABLE_NAME",
        "SEMANTIC_MEGA_TABLE_AGGREGATED_NAME",
        "SEMANTIC_DEFAULT_TIME_GRANULARITY",
        "SEMANTIC_MAX_DIMENSIONS",
        "SEMANTIC_MAX_METRICS",
        "LOG_LEVEL",
        "OTEL_SERVICE_NAME",
    }


def test_engine_defaults_come_from_settings(monkeypatch: pytest.MonkeyPatch, holder: RegistryHolder) -> None:
    monkeypatch.setattr(config.settings, "SEMANTIC_SQL_DIALECT", "postgres")
    monkeypatch.setattr(config.settings, "SEMANTIC_MAX_METRICS", 1)

    engine = SemanticQueryEngine(holder)

    assert engine.dialect == "postgres"
    with pytest.raises(QueryTooLarge):
        engine.compile({"metrics": ["revenue", "orders"]})
