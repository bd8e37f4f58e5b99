"""Unit tests for the webhook URL cache."""

from matchday.engine.webhook_cache import CachedWebhook, WebhookUrlCache


def test_partial_updates_keep_existing_values():
    cache = WebhookUrlCache()
    cache.set("efd", url="https://engine.test/webhook/efd")
    cache.set("efd", engine_workflow_id="wf-1")

    assert cache.get_url("efd") == "https://engine.test/webhook/efd"
    assert cache.get_engine_id("efd") == "wf-1"
    assert cache.get_url("missing") is None


def test_snapshot_is_a_copy():
    cache = WebhookUrlCache()
    cache.set("efd", engine_workflow_id="wf-1")

    snapshot = cache.snapshot()
    cache.clear()

    assert snapshot == {"efd": CachedWebhook(engine_workflow_id="wf-1")}
    assert len(cache) == 0
