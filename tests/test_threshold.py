import threading

import pytest

from loadtools.threshold import Decision, ThresholdAction, ThresholdManager, ThresholdPolicy
from loadtools.validation import Severity
from loadtools.workflow.policy import RetryPolicy, wait_for_retry


def manager(**cfg):
    return ThresholdManager(ThresholdPolicy.from_config(cfg))


# -------------------------------------------------------
# Policies
# -------------------------------------------------------

def test_default_policy_has_no_limits():
    policy = ThresholdPolicy.from_config(None)
    assert policy.max_errors is None and policy.max_error_rate is None
    assert policy.action is ThresholdAction.STOP


def test_profile_values_can_be_overridden():
    policy = ThresholdPolicy.from_config({"profile": "lenient", "max_error_rate": 0.2})
    assert policy.max_error_rate == 0.2
    assert policy.action is ThresholdAction.ALERT_ONLY


@pytest.mark.parametrize("cfg", [
    {"profile": "unknown"},
    {"max_errors": 0},
    {"max_error_rate": 1.5},
    {"action": "panic"},
    {"action": "retry_with_delay", "retry": {"base_delay": -1}},
])
def test_invalid_policy_rejected(cfg):
    with pytest.raises(ValueError):
        ThresholdPolicy.from_config(cfg)


# -------------------------------------------------------
# Decisions
# -------------------------------------------------------

def test_stop_at_max_errors_and_stays_stopped():
    m = manager(max_errors=5, action="stop")
    decisions = [m.record_outcome(Severity.ERROR) for _ in range(5)]
    assert decisions == [Decision.CONTINUE] * 4 + [Decision.STOP]
    assert m.record_outcome("error") is Decision.STOP
    assert m.record_outcome("warning") is Decision.STOP
    assert m.halted
    stats = m.statistics()
    assert stats["errors"] == 6 and stats["decision"] == "stop"
    assert "reached limit 5" in stats["breach"]["reason"]


def test_error_rate_uses_expected_batch_size():
    m = manager(max_error_rate=0.05)
    m.expect(1000)
    decisions = [m.record_outcome(Severity.ERROR) for _ in range(51)]
    assert Decision.STOP not in decisions[:50]
    assert decisions[50] is Decision.STOP


def test_warnings_have_their_own_limit():
    m = manager(max_warnings=2, max_errors=100)
    assert m.record_outcome(Severity.WARNING) is Decision.CONTINUE
    assert m.record_outcome(Severity.WARNING) is Decision.STOP


def test_alert_only_fires_once_then_continues():
    m = manager(max_errors=2, action="alert_only")
    decisions = [m.record_outcome(Severity.ERROR) for _ in range(4)]
    assert decisions == [Decision.CONTINUE, Decision.ALERT, Decision.CONTINUE, Decision.CONTINUE]
    assert m.decision is Decision.ALERT
    assert not m.halted


def test_continue_action_only_records_the_breach():
    m = manager(max_errors=1, action="continue")
    assert m.record_outcome(Severity.ERROR) is Decision.CONTINUE
    assert m.statistics()["breach"]["decision"] == "continue"


def test_retry_with_delay_until_budget_spent():
    m = manager(max_errors=2, action="retry_with_delay", retry={"attempts": 1, "base_delay": 5})
    m.record_outcome(Severity.ERROR)
    assert m.record_outcome(Severity.ERROR) is Decision.RETRY_SCHEDULED
    assert m.halted

    assert m.begin_retry() == 5.0
    assert m.decision is Decision.CONTINUE
    assert m.counters.snapshot()["errors"] == 0

    m.record_outcome(Severity.ERROR)
    assert m.record_outcome(Severity.ERROR) is Decision.STOP
    stats = m.statistics()
    assert stats["retries_used"] == 1
    assert len(stats["attempts"]) == 1 and stats["attempts"][0]["delay"] == 5.0


def test_begin_retry_without_schedule_fails():
    with pytest.raises(RuntimeError):
        manager(max_errors=1).begin_retry()


def test_concurrent_breach_is_latched_once():
    m = manager(max_errors=10, action="alert_only")
    decisions = []
    lock = threading.Lock()

    def worker():
        for _ in range(10):
            d = m.record_outcome(Severity.ERROR)
            with lock:
                decisions.append(d)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert decisions.count(Decision.ALERT) == 1
    assert m.counters.errors.value == 40


def test_reset_clears_execution_state():
    m = manager(max_errors=1)
    m.record_outcome(Severity.ERROR)
    m.reset()
    assert m.decision is Decision.CONTINUE
    assert m.statistics()["errors"] == 0


# -------------------------------------------------------
# Retry policy
# -------------------------------------------------------

def test_backoff_doubles_up_to_cap():
    policy = RetryPolicy(max_retries=5, base_delay=1.0, max_delay=5.0)
    assert [policy.delay_for(i) for i in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_schedule_exhausts_after_max_retries():
    schedule = RetryPolicy(max_retries=2, base_delay=1.0).start()
    assert schedule.record_failure() == 1.0
    assert schedule.record_failure() == 2.0
    assert schedule.record_failure() is None
    assert schedule.exhausted
    with pytest.raises(RuntimeError):
        schedule.record_failure()


def test_wait_for_retry_reports_cancellation():
    event = threading.Event()
    event.set()
    assert wait_for_retry(10.0, event.wait) is True
    assert wait_for_retry(0.0, lambda d: False) is False
