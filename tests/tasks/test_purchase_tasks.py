import pytest

from infrastructure.tasks import TaskDispatcher, celery_app
from infrastructure.tasks.tasks import purchases as tasks


def test_dispatcher_sends_fanout_retry_by_name(monkeypatch):
    sent = []
    monkeypatch.setattr(celery_app, "send_task", lambda name, **kw: sent.append((name, kw)))

    TaskDispatcher().schedule_fanout_retry(5, "grant", countdown=30)

    assert sent == [("purchases.retry_fanout", {"kwargs": {"purchase_id": 5, "action": "grant"}, "countdown": 30})]


def test_fanout_retry_is_routed_to_high_queue():
    assert celery_app.conf.task_routes["purchases.retry_fanout"] == {"queue": "high"}
    scheduled = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}
    assert scheduled == {"purchases.reconcile_enrollments", "purchases.expire_stale_pending"}


def test_retry_fanout_task_reports_status(monkeypatch):
    async def fake_run(purchase_id, action):
        return "applied"

    monkeypatch.setattr(tasks, "_run_deferred_fanout", fake_run)
    result = tasks.task_retry_fanout.apply(kwargs={"purchase_id": 5, "action": "grant"})
    assert result.successful()
    assert result.result == {"purchase_id": 5, "action": "grant", "status": "applied"}


def test_retry_fanout_exhaustion_alerts_operator(monkeypatch):
    alerts = []

    async def broken(purchase_id, action):
        raise RuntimeError("db down")

    monkeypatch.setattr(tasks, "_run_deferred_fanout", broken)
    monkeypatch.setattr(tasks, "operator_alert", lambda event, **kw: alerts.append((event, kw)))

    result = tasks.task_retry_fanout.apply(
        kwargs={"purchase_id": 5, "action": "revoke"},
        retries=tasks.task_retry_fanout.max_retries,
    )
    assert result.failed()
    assert alerts[0][0] == "enrollment_fanout_exhausted"
    assert alerts[0][1]["purchase_id"] == 5


@pytest.mark.parametrize("stats", [{"granted": 0, "revoked": 0}, {"granted": 1, "revoked": 2}])
def test_reconcile_enrollments_returns_sweep_stats(monkeypatch, stats):
    async def fake_sweep(batch_size):
        return dict(stats, checked=batch_size)

    monkeypatch.setattr(tasks, "_run_sweep", fake_sweep)
    result = tasks.task_reconcile_enrollments.apply(kwargs={"batch_size": 10})
    assert result.result["checked"] == 10
