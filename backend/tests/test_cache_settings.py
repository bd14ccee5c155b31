from campus_transit.core.settings import reload_settings
from campus_transit.services.cache import TopicCache


def test_cache_expires_after_ttl(clock):
    cache = TopicCache(ttl_seconds=5, clock=clock)
    cache.put(1, "listing")
    clock.advance(seconds=4)
    assert cache.get(1) == "listing"
    clock.advance(seconds=1)
    assert cache.get(1) is None
    assert len(cache) == 0


def test_cache_invalidate_one_or_all(clock):
    cache = TopicCache(clock=clock)
    cache.put(1, "a")
    cache.put(2, "b")
    cache.invalidate(1)
    assert cache.get(1) is None and cache.get(2) == "b"
    cache.invalidate()
    assert len(cache) == 0


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("VOTE_THRESHOLD", "1")
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "")
    monkeypatch.setenv("TELEGRAM_CHAT_IDS", "-1001, -1002 ,")
    monkeypatch.setenv("ENABLE_POLLER", "0")
    try:
        settings = reload_settings()
        assert settings.vote_threshold == 1.0
        assert settings.telegram_bot_token is None
        assert settings.telegram_chat_ids == ["-1001", "-1002"]
        assert settings.enable_poller is False
        assert settings.driver_response_minutes == 10
    finally:
        monkeypatch.undo()
        reload_settings()
