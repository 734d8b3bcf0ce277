"""Usage tracker: recording, reports, trends, alerts with cooldown, admission, retention."""

import json
from datetime import timedelta

import pytest

from apps.context_engine.errors import ValidationError
from apps.context_engine.services.usage import UsageTracker


@pytest.fixture
def tracker(db, clock):
    return UsageTracker(
        db,
        cost_per_1k_tokens=0.01,
        min_success_rate=0.9,
        high_tokens_per_hour=1000,
        cost_per_day=1.0,
        clock=clock,
    )


def test_report_summary_and_breakdown(tracker) -> None:
    tracker.record_usage("t1", "embedding_generation", content_type="MENU", token_count=100, api_calls=1, processing_time_ms=10)
    tracker.record_usage("t1", "embedding_search", content_type="MENU", token_count=5, processing_time_ms=30)
    tracker.record_usage("t1", "indexing_job", success=False, error_code="INDEXING_FAILED")
    tracker.record_usage("t2", "embedding_generation", token_count=999, api_calls=1)

    report = tracker.generate_usage_report("t1", "day")
    assert report["tenant_id"] == "t1"
    assert report["period"] == "day"
    assert report["summary"] == {
        "total_operations": 3,
        "total_tokens": 105,
        "total_api_calls": 1,
        "total_cost": 0.00105,
        "success_rate": 0.6667,
        "average_response_time": 13.33,
    }
    by_op = report["breakdown"]["by_operation"]
    assert by_op["embedding_generation"] == {"operations": 1, "tokens": 100, "api_calls": 1, "failures": 0}
    assert report["breakdown"]["by_content_type"]["NONE"]["failures"] == 1
    assert report["breakdown"]["by_bucket"] == {
        "2025-03-01T12:00Z": {"operations": 3, "tokens": 105, "api_calls": 1, "failures": 1}
    }
    assert report["trends"]["usage_growth"] == 100.0
    assert [a["alert_type"] for a in report["alerts"]] == ["error_rate"]
    assert report["alerts"][0]["severity"] == "high"


def test_empty_report(tracker) -> None:
    report = tracker.generate_usage_report("t1", "week")
    assert report["summary"]["total_operations"] == 0
    assert report["summary"]["success_rate"] == 1.0
    assert report["trends"] == {"token_growth": 0.0, "cost_growth": 0.0, "usage_growth": 0.0}
    assert report["alerts"] == []


def test_invalid_period(tracker) -> None:
    with pytest.raises(ValidationError):
        tracker.generate_usage_report("t1", "year")


def test_trends_against_previous_period(tracker, clock) -> None:
    tracker.record_usage("t1", "embedding_generation", token_count=100)
    clock.advance(days=1, minutes=1)
    tracker.record_usage("t1", "embedding_generation", token_count=150)
    trends = tracker.generate_usage_report("t1", "day")["trends"]
    assert trends["token_growth"] == 50.0
    assert trends["cost_growth"] == 50.0
    assert trends["usage_growth"] == 0.0


def test_high_usage_alert_uses_peak_hour(tracker) -> None:
    tracker.record_usage("t1", "embedding_generation", token_count=600)
    tracker.record_usage("t1", "embedding_generation", token_count=600)
    alerts = tracker.generate_usage_report("t1")["alerts"]
    assert [(a["alert_type"], a["severity"]) for a in alerts] == [("high_usage", "medium")]
    assert alerts[0]["current_value"] == 1200.0


def test_cost_alert(tracker) -> None:
    tracker.record_usage("t1", "embedding_generation", token_count=250_000)
    alerts = {a["alert_type"]: a for a in tracker.generate_usage_report("t1")["alerts"]}
    assert alerts["cost_threshold"]["severity"] == "critical"
    assert alerts["cost_threshold"]["current_value"] == 2.5
    assert alerts["high_usage"]["severity"] == "high"


def test_error_rate_severity_levels(tracker) -> None:
    for _ in range(3):
        tracker.record_usage("t1", "embedding_search", success=False)
    tracker.record_usage("t1", "embedding_search", success=True)
    alert = tracker.generate_usage_report("t1")["alerts"][0]
    assert alert["alert_type"] == "error_rate"
    assert alert["severity"] == "critical"
    assert alert["current_value"] == 0.25


def test_check_alerts_persists_with_cooldown(tracker, clock) -> None:
    tracker.record_usage("t1", "embedding_search", success=False)
    inserted = tracker.check_alerts("t1", cooldown_hours=24)
    assert [a["alert_type"] for a in inserted] == ["error_rate"]
    assert tracker.check_alerts("t1", cooldown_hours=24) == []
    assert len(tracker.get_alerts("t1")) == 1

    clock.advance(hours=25)
    tracker.record_usage("t1", "embedding_search", success=False)
    assert len(tracker.check_alerts("t1", cooldown_hours=24)) == 1
    assert len(tracker.get_alerts("t1")) == 2


def test_alerts_are_tenant_scoped(tracker) -> None:
    tracker.record_alert("t1", "high_usage", "medium", "busy", 1000, 1500)
    tracker.record_alert("t2", "cost_threshold", "high", "pricey", 1.0, 1.5)
    mine = tracker.get_alerts("t1")
    assert [a["alert_type"] for a in mine] == ["high_usage"]
    assert mine[0]["created_at"].startswith("2025-03-01T12:00")
    assert len(tracker.get_alerts(None)) == 2
    with pytest.raises(ValidationError):
        tracker.record_alert("t1", "disk_full", "low", "nope", 0, 0)


def test_record_usage_never_raises(tracker) -> None:
    assert tracker.record_usage("t1", "made_up_operation") is False
    assert tracker.record_usage("", "embedding_search") is False
    assert tracker.count_records("t1") == 0


def test_rate_limit_window(tracker, clock) -> None:
    tracker.record_usage("t1", "embedding_generation", token_count=50, api_calls=2)
    assert tracker.is_within_rate_limit("t1") is True
    assert tracker.is_within_rate_limit("t1", max_tokens_per_hour=100) is True
    assert tracker.is_within_rate_limit("t1", max_tokens_per_hour=50) is False
    assert tracker.is_within_rate_limit("t1", max_calls_per_hour=2) is False
    assert tracker.get_current_usage("t1") == {"tokens": 50, "api_calls": 2, "operations": 1}
    clock.advance(minutes=61)
    assert tracker.is_within_rate_limit("t1", max_tokens_per_hour=50) is True


def test_usage_stats(tracker) -> None:
    tracker.record_usage("t1", "embedding_search", token_count=4)
    stats = tracker.get_usage_stats("t1", "hour")
    assert stats["total_operations"] == 1
    assert stats["by_operation"]["embedding_search"]["tokens"] == 4


def test_admin_dashboard(tracker) -> None:
    tracker.record_usage("t1", "embedding_generation", token_count=100)
    tracker.record_usage("t2", "embedding_generation", token_count=300)
    tracker.record_usage("t2", "embedding_search", success=False)
    dash = tracker.get_admin_dashboard_metrics(queue_size=lambda: 4)
    assert dash["overview"]["total_tenants"] == 2
    assert [t["tenant_id"] for t in dash["top_tenants"]] == ["t2", "t1"]
    assert dash["system_health"] == {"database": True, "queue_size": 4, "error_rate": 0.3333}


def test_cleanup_old_data(tracker, clock) -> None:
    tracker.record_usage("t1", "embedding_search")
    tracker.record_alert("t1", "error_rate", "high", "old", 0.9, 0.5)
    clock.advance(days=91)
    tracker.record_usage("t1", "embedding_search")
    assert tracker.cleanup_old_data(90) == {"metrics": 1, "alerts": 1}
    assert tracker.count_records("t1") == 1


def test_export_csv_is_tenant_scoped_and_ordered(tracker, clock) -> None:
    start = clock()
    tracker.record_usage("t1", "embedding_generation", content_type="MENU", token_count=100, api_calls=1, processing_time_ms=7)
    tracker.record_usage("t2", "embedding_generation", token_count=999, api_calls=1)
    clock.advance(minutes=5)
    tracker.record_usage("t1", "embedding_search", success=False, error_code="SEARCH_FAILED")

    lines = tracker.export_usage_data("t1", start, clock(), "csv").splitlines()
    assert lines == [
        "created_at,operation,content_type,token_count,api_calls,processing_time_ms,success,error_code,cost",
        "2025-03-01T12:00:00+00:00,embedding_generation,MENU,100,1,7,True,,0.001",
        "2025-03-01T12:05:00+00:00,embedding_search,,0,0,0,False,SEARCH_FAILED,0.0",
    ]


def test_export_json_window(tracker, clock) -> None:
    tracker.record_usage("t1", "embedding_search", token_count=3)
    clock.advance(days=2)
    tracker.record_usage("t1", "embedding_search", token_count=5)
    rows = json.loads(tracker.export_usage_data("t1", clock() - timedelta(days=1), clock()))
    assert [r["token_count"] for r in rows] == [5]
    assert rows[0]["operation"] == "embedding_search"
    assert rows[0]["success"] is True


def test_export_rejects_bad_arguments(tracker, clock) -> None:
    with pytest.raises(ValidationError):
        tracker.export_usage_data("t1", clock(), clock(), "xml")
    with pytest.raises(ValidationError):
        tracker.export_usage_data("t1", clock(), clock() - timedelta(hours=1))
    with pytest.raises(ValidationError):
        tracker.export_usage_data("", clock(), clock())
