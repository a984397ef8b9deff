import json

import pytest

from cdnssl.capabilities import (
    CapabilityFactories,
    CapabilityRegistry,
    CapabilitySet,
)
from cdnssl.notification import NotificationError
from cdnssl.orchestrator import CycleOrchestrator, make_runner
from cdnssl.pipeline import Stage
from cdnssl.report import REPORT_SUBJECT

from conftest import NOW, FakeCdn, FakeIssuer, FakeNotifier, cert, make_snapshot


def _unused_factory(config):
    raise AssertionError("capability rebuilt unexpectedly")


def make_orchestrator(capabilities: CapabilitySet) -> CycleOrchestrator:
    factories = CapabilityFactories(
        issuer=_unused_factory,
        cdn=_unused_factory,
        notifier=_unused_factory,
    )
    registry = CapabilityRegistry(factories, initial=capabilities)
    return CycleOrchestrator(registry, clock=lambda: NOW)


def build_cycle(domains, certificates=None, issuer_failures=None, cdn_failures=None, notifier=None):
    issuer = FakeIssuer(issuer_failures)
    cdn = FakeCdn(domains, certificates, failures=cdn_failures)
    notifier = notifier or FakeNotifier()
    capabilities = CapabilitySet(inventory=cdn, issuer=issuer, publisher=cdn, notifier=notifier)
    return make_orchestrator(capabilities), issuer, cdn, notifier


def test_scenario_a_first_certificate():
    orchestrator, issuer, cdn, notifier = build_cycle(["a.example.com"])

    report = orchestrator.run_cycle(make_snapshot())

    assert report.renewed == ["a.example.com"]
    assert report.success
    assert issuer.calls["a.example.com"] == 1
    assert cdn.calls[("upload", "a.example.com")] == 1
    assert cdn.calls[("force_https", "a.example.com")] == 1
    assert cdn.removed == []
    assert notifier.sent == []


def test_scenario_b_expiring_certificate_is_replaced():
    orchestrator, issuer, cdn, notifier = build_cycle(
        ["b.example.com"],
        certificates=[cert("b.example.com", "old-1", 10)],
    )

    report = orchestrator.run_cycle(make_snapshot(lookahead_days=30))

    assert report.selected == ["b.example.com"]
    assert report.renewed == ["b.example.com"]
    assert cdn.removed == ["old-1"]
    assert notifier.sent == []


def test_valid_certificate_is_left_alone():
    orchestrator, issuer, cdn, notifier = build_cycle(
        ["v.example.com"],
        certificates=[cert("v.example.com", "id-v", 60)],
    )

    report = orchestrator.run_cycle(make_snapshot())

    assert report.selected == []
    assert report.skipped == ["v.example.com"]
    assert issuer.calls["v.example.com"] == 0


def test_scenario_c_publish_failure_recovers_on_resume():
    orchestrator, issuer, cdn, notifier = build_cycle(
        ["c.example.com"],
        cdn_failures={("upload", "c.example.com"): ["quota exceeded"]},
    )

    report = orchestrator.run_cycle(make_snapshot())

    assert [f.stage for f in report.first_pass_failures] == [Stage.PUBLISH]
    assert report.residual_failures == []
    assert report.resumed == ["c.example.com"]
    assert report.renewed == ["c.example.com"]
    assert issuer.calls["c.example.com"] == 1
    assert cdn.calls[("upload", "c.example.com")] == 2
    assert notifier.sent == []


def test_scenario_d_residual_failure_is_reported_once_with_resume_cause():
    orchestrator, issuer, cdn, notifier = build_cycle(
        ["c.example.com", "ok.example.com"],
        cdn_failures={("upload", "c.example.com"): ["quota exceeded", "quota still exceeded"]},
    )

    report = orchestrator.run_cycle(make_snapshot())

    assert report.renewed == ["ok.example.com"]
    assert len(report.residual_failures) == 1
    assert report.residual_failures[0].cause == "quota still exceeded"
    assert report.notified
    assert not report.success

    assert len(notifier.sent) == 1
    message = notifier.sent[0]
    assert message["subject"] == REPORT_SUBJECT
    assert message["recipients"] == ["ops@example.com"]
    assert message["html"].count("<td>c.example.com</td>") == 1
    assert "<td>publish: quota still exceeded</td>" in message["html"]
    assert "ok.example.com" not in message["html"]
    assert issuer.calls["c.example.com"] == 1


def test_one_failing_domain_does_not_stop_the_others():
    orchestrator, issuer, cdn, notifier = build_cycle(
        ["bad.example.com", "good1.example.com", "good2.example.com"],
        issuer_failures={"bad.example.com": ["dns timeout", "dns timeout"]},
    )

    report = orchestrator.run_cycle(make_snapshot())

    assert report.renewed == ["good1.example.com", "good2.example.com"]
    assert [f.domain for f in report.residual_failures] == ["bad.example.com"]
    assert issuer.calls["bad.example.com"] == 2


def test_notification_failure_is_logged_not_raised():
    orchestrator, issuer, cdn, notifier = build_cycle(
        ["c.example.com"],
        issuer_failures={"c.example.com": ["boom", "boom"]},
        notifier=FakeNotifier(error=NotificationError("smtp down")),
    )

    report = orchestrator.run_cycle(make_snapshot())

    assert len(report.residual_failures) == 1
    assert not report.notified


def test_no_recipients_skips_report():
    orchestrator, issuer, cdn, notifier = build_cycle(
        ["c.example.com"],
        issuer_failures={"c.example.com": ["boom", "boom"]},
    )

    report = orchestrator.run_cycle(make_snapshot(recipients=[]))

    assert not report.notified
    assert notifier.sent == []


def test_inventory_failure_is_a_global_error():
    cdn = FakeCdn(["a.example.com"], inventory_error=RuntimeError("network unreachable"))
    issuer = FakeIssuer()
    orchestrator = make_orchestrator(CapabilitySet(inventory=cdn, issuer=issuer, publisher=cdn))

    report = orchestrator.run_cycle(make_snapshot())

    assert report.global_errors == ["inventory unavailable: network unreachable"]
    assert report.selected == []
    assert not report.success
    assert issuer.calls == {}


def test_dry_run_changes_nothing():
    orchestrator, issuer, cdn, notifier = build_cycle(
        ["a.example.com", "b.example.com"],
        certificates=[cert("b.example.com", "old-1", 3)],
    )

    report = orchestrator.run_cycle(make_snapshot(dry_run=True))

    assert report.dry_run
    assert report.selected == ["a.example.com", "b.example.com"]
    assert report.renewed == []
    assert issuer.calls == {}
    assert cdn.log == []


def test_renewal_cap_defers_domains():
    orchestrator, issuer, cdn, notifier = build_cycle(["a.example.com", "b.example.com", "c.example.com"])

    report = orchestrator.run_cycle(make_snapshot(max_renewals_per_cycle=1))

    assert report.renewed == ["a.example.com"]
    assert report.deferred == ["b.example.com", "c.example.com"]


def test_parallel_workers_renew_every_domain():
    domains = [f"d{i}.example.com" for i in range(8)]
    orchestrator, issuer, cdn, notifier = build_cycle(
        domains,
        cdn_failures={("upload", "d3.example.com"): ["transient"]},
    )

    report = orchestrator.run_cycle(make_snapshot(workers=4))

    assert sorted(report.renewed) == sorted(domains)
    assert report.residual_failures == []
    assert all(issuer.calls[d] == 1 for d in domains)


def test_make_runner_is_sequential_for_one_worker():
    assert make_runner(1) is None
    runner = make_runner(3)
    assert runner(lambda x: x * 2, [1, 2, 3]) == [2, 4, 6]
    assert runner(lambda x: x, []) == []


def test_stop_cancels_cycle_and_skips_report():
    orchestrator, issuer, cdn, notifier = build_cycle(["a.example.com"])
    orchestrator.stop()

    report = orchestrator.run_cycle(make_snapshot())

    assert report.cancelled
    assert issuer.calls["a.example.com"] == 0
    assert [f.cause for f in report.residual_failures] == ["operation cancelled"]
    assert notifier.sent == []


def test_report_json_summary():
    orchestrator, issuer, cdn, notifier = build_cycle(
        ["a.example.com", "c.example.com"],
        issuer_failures={"c.example.com": ["boom", "still boom"]},
    )

    data = json.loads(orchestrator.run_cycle(make_snapshot()).to_json())

    assert data["cycle"] == 1
    assert data["success"] is False
    assert data["summary"]["renewed"] == 1
    assert data["summary"]["failed"] == 1
    assert data["residual_failures"] == [
        {"domain": "c.example.com", "stage": "obtain", "cause": "still boom"}
    ]


class CountingFactories:
    def __init__(self):
        self.builds = []
        self.fail = set()

    def build(self, section, instance):
        def factory(config):
            self.builds.append(section)
            if section in self.fail:
                raise RuntimeError(f"{section} misconfigured")
            return instance
        return factory


def test_reconcile_rebuilds_changed_sections_only():
    cdn = FakeCdn()
    issuer = FakeIssuer()
    notifier = FakeNotifier()
    counting = CountingFactories()
    registry = CapabilityRegistry(CapabilityFactories(
        issuer=counting.build("issuer", issuer),
        cdn=counting.build("cdn", cdn),
        notifier=counting.build("notifier", notifier),
    ))

    first = registry.reconcile(make_snapshot(changed=True))
    assert counting.builds == ["issuer", "cdn", "notifier"]
    assert first.inventory is cdn and first.publisher is cdn
    assert first.issuer is issuer and first.notifier is notifier

    unchanged = registry.reconcile(make_snapshot(changed=False))
    assert unchanged is first
    assert counting.builds == ["issuer", "cdn", "notifier"]

    snapshot = make_snapshot(changed=False)
    snapshot.cdn_changed = True
    registry.reconcile(snapshot)
    assert counting.builds == ["issuer", "cdn", "notifier", "cdn"]


def test_failed_rebuild_keeps_previous_instance():
    issuer = FakeIssuer()
    counting = CountingFactories()
    registry = CapabilityRegistry(CapabilityFactories(
        issuer=counting.build("issuer", issuer),
        cdn=counting.build("cdn", FakeCdn()),
        notifier=counting.build("notifier", FakeNotifier()),
    ))
    registry.reconcile(make_snapshot(changed=True))

    counting.fail.add("issuer")
    snapshot = make_snapshot(changed=False)
    snapshot.issuer_changed = True
    current = registry.reconcile(snapshot)

    assert current.issuer is issuer
    assert registry.current().issuer is issuer


def test_failed_first_build_leaves_capability_missing():
    counting = CountingFactories()
    counting.fail.add("notifier")
    registry = CapabilityRegistry(CapabilityFactories(
        issuer=counting.build("issuer", FakeIssuer()),
        cdn=counting.build("cdn", FakeCdn()),
        notifier=counting.build("notifier", FakeNotifier()),
    ))

    current = registry.reconcile(make_snapshot(changed=True))

    assert current.notifier is None
    assert current.issuer is not None


class StubSource:
    def __init__(self, snapshots):
        self.snapshots = list(snapshots)
        self.loads = 0

    def load(self):
        self.loads += 1
        result = self.snapshots.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def test_run_forever_stops_after_max_cycles():
    orchestrator, issuer, cdn, notifier = build_cycle(["a.example.com"])
    source = StubSource([make_snapshot(min_cycle_interval=0) for _ in range(3)])
    reports = []

    last = orchestrator.run_forever(source, max_cycles=3, on_cycle=reports.append)

    assert [r.cycle for r in reports] == [1, 2, 3]
    assert last is reports[-1]
    assert source.loads == 3


def test_run_forever_uses_first_snapshot_without_reloading():
    orchestrator, issuer, cdn, notifier = build_cycle([])
    source = StubSource([])

    last = orchestrator.run_forever(source, first_snapshot=make_snapshot(min_cycle_interval=0), max_cycles=1)

    assert last.cycle == 1
    assert source.loads == 0


def test_run_forever_survives_a_failing_cycle():
    orchestrator, issuer, cdn, notifier = build_cycle(["a.example.com"])
    source = StubSource([RuntimeError("disk full"), make_snapshot(min_cycle_interval=0)])

    last = orchestrator.run_forever(source, max_cycles=1)

    assert source.loads == 2
    assert last.cycle == 1
    assert last.renewed == ["a.example.com"]


def test_run_forever_ends_when_stopped():
    orchestrator, issuer, cdn, notifier = build_cycle([])
    source = StubSource([make_snapshot(min_cycle_interval=3600) for _ in range(2)])

    def stop_after_first(report):
        orchestrator.stop()

    last = orchestrator.run_forever(source, on_cycle=stop_after_first)

    assert last.cycle == 1
    assert orchestrator.stopped


@pytest.mark.parametrize("interval", [0, 3600])
def test_run_forever_waits_on_token(interval):
    orchestrator, issuer, cdn, notifier = build_cycle([])
    waits = []

    class RecordingToken:
        is_cancelled = False

        def wait(self, timeout=None):
            waits.append(timeout)
            return True

        def cancel(self):
            self.is_cancelled = True

    orchestrator.token = RecordingToken()
    source = StubSource([make_snapshot(min_cycle_interval=interval) for _ in range(2)])

    orchestrator.run_forever(source, max_cycles=2)

    if interval:
        assert len(waits) == 1 and 0 < waits[0] <= interval
        assert orchestrator.cycle_count == 1
    else:
        assert waits == []
        assert orchestrator.cycle_count == 2
