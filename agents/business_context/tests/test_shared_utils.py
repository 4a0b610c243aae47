import json
import logging
from datetime import datetime

import pytest

from shared.base.services import ContractViolationError, EmbeddingService
from shared.config.environment import Environment, get_environment, override_environment, reset_environment
from shared.config.logging_config import (
    LoggingConfig,
    StructuredFormatter,
    TraceIDFilter,
    get_default_logging_config,
    get_trace_id,
    reset_trace_id,
    set_trace_id,
    setup_logging,
)
from shared.config.settings import CONFIG_DIR, Settings
from shared.config.vocabulary import load_business_vocabulary_from, load_domain_profiles_from
from shared.schemas.business_context import EntityType
from shared.utils.caching import MemoryCache, cache_result, generate_cache_key, get_cache_manager, hash_question
from shared.utils.metrics import get_metrics_collector, get_system_metrics, track_performance
from shared.utils.text import contains_keyword, matched_keywords, text_similarity


def test_cosine_similarity():
    assert EmbeddingService.cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert EmbeddingService.cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == 0.0
    assert EmbeddingService.cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0

    with pytest.raises(ContractViolationError):
        EmbeddingService.cosine_similarity([1.0, 0.0], [1.0])


@pytest.mark.asyncio
async def test_memory_cache_distinguishes_stored_none():
    cache = MemoryCache(max_size=10)

    await cache.set("empty", None)

    assert await cache.lookup("empty") == (None, True)
    assert await cache.lookup("missing") == (None, False)
    assert cache.get_stats().hits == 1
    assert cache.get_stats().misses == 1


@pytest.mark.asyncio
async def test_memory_cache_expires_entries():
    cache = MemoryCache(max_size=10)

    await cache.set("stale", "value", ttl=-1)
    await cache.set("fresh", "value")

    assert await cache.lookup("stale") == (None, False)
    assert await cache.get("fresh") == "value"
    assert cache.keys() == ["fresh"]


def test_memory_cache_evicts_least_recently_used():
    cache = MemoryCache(max_size=2)
    cache.set_sync("a", 1)
    cache.set_sync("b", 2)
    cache._cache["a"].accessed_at = datetime(2024, 1, 2)
    cache._cache["b"].accessed_at = datetime(2024, 1, 1)

    cache.set_sync("c", 3)

    assert sorted(cache.keys()) == ["a", "c"]
    assert cache.get_stats().evictions == 1


@pytest.mark.asyncio
async def test_cache_result_decorator_reuses_values():
    calls = []

    @cache_result(ttl=60, cache_name='short_term')
    async def expensive(value):
        calls.append(value)
        return value * 2

    assert await expensive(4) == 8
    assert await expensive(4) == 8
    assert await expensive(5) == 10
    assert calls == [4, 5]
    assert len(get_cache_manager().get_cache('short_term')) == 2


def test_cache_result_rejects_sync_functions():
    with pytest.raises(TypeError):
        cache_result()(lambda: None)


def test_cache_keys_are_deterministic():
    first = generate_cache_key("intent", "abc", user_id="u1", limit=3)
    second = generate_cache_key("intent", "abc", limit=3, user_id="u1")

    assert first == second
    assert first.startswith("intent:")
    assert first != generate_cache_key("intent", "abc", user_id="u2", limit=3)


def test_question_hash_ignores_case_and_spacing():
    assert hash_question("Total  Deposits\n") == hash_question("total deposits")
    assert hash_question("total deposits") != hash_question("total withdrawals")
    assert hash_question(None) == hash_question("")


@pytest.mark.asyncio
async def test_track_performance_counts_calls_and_errors():
    @track_performance(metric_name="sample_operation")
    async def succeed():
        return "ok"

    @track_performance(metric_name="sample_operation")
    async def fail():
        raise RuntimeError("boom")

    assert await succeed() == "ok"
    with pytest.raises(RuntimeError):
        await fail()

    collector = get_metrics_collector()
    assert collector.counter("sample_operation_calls").get_value() == 2
    assert collector.counter("sample_operation_errors").get_value() == 1
    assert collector.timer("sample_operation_duration").get_statistics()['count'] == 2


def test_track_performance_wraps_sync_functions():
    @track_performance(metric_name="sync_operation")
    def add(a, b):
        return a + b

    assert add(2, 3) == 5
    assert get_metrics_collector().counter("sync_operation_calls").get_value() == 1


def test_system_metrics_report_process_and_host():
    metrics = get_system_metrics()

    assert set(metrics) == {'cpu_percent', 'memory_percent', 'memory_available_gb', 'process_rss_mb'}
    assert metrics['process_rss_mb'] > 0


@pytest.mark.parametrize("text,keyword,expected", [
    ("How many UK players?", "uk", True),
    ("Sales in Ukraine", "uk", False),
    ("Revenue by player", "play", True),
    ("Replay counts", "play", False),
    ("Show the  year over   year growth", "year over year", True),
])
def test_contains_keyword(text, keyword, expected):
    assert contains_keyword(text, keyword) is expected


def test_matched_keywords_keeps_keyword_order():
    assert matched_keywords("revenue and deposits", ["deposit", "bonus", "revenue"]) == ["deposit", "revenue"]


def test_text_similarity():
    assert text_similarity("Deposit", "deposit") == 1.0
    assert text_similarity("", "deposit") == 0.0
    assert 0.8 < text_similarity("withdrawls", "withdrawals") < 1.0


def test_settings_read_nested_environment(monkeypatch):
    monkeypatch.setenv("BUSINESS_CONTEXT__DEFAULT_MAX_TOKENS", "8000")
    monkeypatch.setenv("GOOGLE_GENAI_API_KEY", "secret-key")

    settings = Settings(_env_file=None)

    assert settings.business_context.default_max_tokens == 8000
    assert settings.genai.is_configured
    assert settings.get_genai_client_config()['api_key'] == "secret-key"
    assert "secret-key" not in repr(settings)


def test_settings_without_api_key(monkeypatch):
    monkeypatch.delenv("GOOGLE_GENAI_API_KEY", raising=False)

    settings = Settings(_env_file=None)

    assert not settings.genai.is_configured
    assert settings.get_genai_client_config() == {}


def test_reserved_tokens_must_fit_in_window():
    from shared.config.settings import BusinessContextConfig

    with pytest.raises(ValueError):
        BusinessContextConfig(default_max_tokens=1000, default_reserved_response_tokens=1000)


@pytest.fixture
def clean_environment(monkeypatch):
    monkeypatch.delenv("ENVIRONMENT", raising=False)
    monkeypatch.delenv("APP_ENV", raising=False)
    get_environment.cache_clear()
    yield monkeypatch
    get_environment.cache_clear()


@pytest.mark.parametrize("variables,expected", [
    ({}, Environment.DEVELOPMENT),
    ({"ENVIRONMENT": "Production"}, Environment.PRODUCTION),
    ({"ENVIRONMENT": "bogus", "APP_ENV": "staging"}, Environment.STAGING),
])
def test_environment_detection(variables, expected, clean_environment):
    for name, value in variables.items():
        clean_environment.setenv(name, value)

    assert get_environment() == expected


def test_testing_environment_shortens_cache_lifetimes():
    config = Environment.TESTING.default_config

    assert config['profile_cache_ttl_seconds'] == 5
    assert Environment.PRODUCTION.log_level == "WARNING"


def test_structured_formatter_includes_extra_fields():
    record = logging.LogRecord("business_context.test", logging.INFO, __file__, 10, "hello %s", ("world",), None)
    record.component = "analysis.test"

    entry = json.loads(StructuredFormatter(LoggingConfig()).format(record))

    assert entry['message'] == "hello world"
    assert entry['component'] == "analysis.test"
    assert entry['level'] == "INFO"


def test_bundled_vocabularies_load():
    vocabulary = load_business_vocabulary_from(CONFIG_DIR / "business_vocabulary.yaml")
    profiles = load_domain_profiles_from(CONFIG_DIR / "domain_profiles.yaml")

    assert vocabulary.business_terms["deposits"].name == "deposit"
    assert vocabulary.business_terms["deposits"].type == EntityType.METRIC
    assert profiles.domains["Banking"].name == "Banking"
    assert "deposit" in profiles.domains["Banking"].all_keywords
    assert profiles.fallback.name == "General"


def test_vocabulary_file_must_be_a_mapping(tmp_path):
    path = tmp_path / "vocabulary.yaml"
    path.write_text("- deposit\n- withdrawal\n", encoding='utf-8')

    with pytest.raises(ValueError):
        load_business_vocabulary_from(path)


@pytest.mark.asyncio
async def test_cache_manager_cleans_expired_entries():
    manager = get_cache_manager()
    await manager.get_cache('memory').set("stale", 1, ttl=-1)
    await manager.get_cache('short_term').set("fresh", 2)

    assert await manager.cleanup_all_expired() == 1
    assert manager.get_cache('short_term').keys() == ["fresh"]
    assert manager.get_cache('missing') is None


def test_metrics_summary_reports_every_metric():
    collector = get_metrics_collector()
    collector.counter("summary_calls").increment(3)
    collector.gauge("summary_utilization").set(0.5)

    summary = collector.get_summary()

    assert summary['counters']['summary_calls'] == 3
    assert summary['gauges']['summary_utilization'] == 0.5
    with pytest.raises(ValueError):
        collector.counter("summary_calls").increment(-1)


def test_environment_override_and_reset(clean_environment):
    override_environment(Environment.TESTING)
    assert get_environment() == Environment.TESTING

    reset_environment()
    assert get_environment() == Environment.DEVELOPMENT


def test_trace_id_is_scoped_to_the_context():
    token = set_trace_id("analysis-1")
    assert get_trace_id() == "analysis-1"

    reset_trace_id(token)
    assert get_trace_id() is None


def test_setup_logging_installs_filtered_handlers(tmp_path):
    root = logging.getLogger()
    previous_handlers, previous_level = list(root.handlers), root.level
    config = LoggingConfig(
        level="DEBUG",
        enable_file_logging=True,
        log_file_path=str(tmp_path / "logs" / "business_context.log"),
        enable_json_logging=True,
        component_levels={"business_context.analysis": "ERROR"},
    )

    try:
        setup_logging(config)

        assert len(root.handlers) == 2
        assert all(isinstance(h.formatter, StructuredFormatter) for h in root.handlers)
        assert all(any(isinstance(f, TraceIDFilter) for f in h.filters) for h in root.handlers)
        assert logging.getLogger("business_context.analysis").level == logging.ERROR
        assert logging.getLogger("httpx").level == logging.WARNING
        assert (tmp_path / "logs" / "business_context.log").exists()
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers[:] = previous_handlers
        root.setLevel(previous_level)
        logging.getLogger("business_context.analysis").setLevel(logging.NOTSET)


def test_default_logging_config_follows_environment(clean_environment):
    clean_environment.setenv("ENVIRONMENT", "production")

    config = get_default_logging_config()

    assert config.level == "WARNING"
    assert config.enable_json_logging
