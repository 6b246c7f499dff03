"""Tests for the write planner and the reconciliation reporter."""

import json

from fundsweep.constants import ATHLETES, COACHES, DONATIONS, TEAMS, USERS
from fundsweep.schemas.corrections import DELETE_FIELD, CorrectionKind, CorrectionSet, PlannedWrite
from fundsweep.schemas.issues import Issue, IssueKind, Severity
from fundsweep.services.reconciliation_reporter import ReconciliationReporter, tally_key, write_report
from fundsweep.services.write_planner import WritePlanner, field_diff

# ─── Helpers ──────────────────────────────────────────────────────────────────


def _update(collection, doc_id, families=("normalize",), **fields):
    return PlannedWrite(collection, doc_id, CorrectionSet.update_fields(fields), families=list(families))


def _issue(collection="donations", code="DONATION_ORPHAN_CAMPAIGN", kind=IssueKind.ORPHAN_REFERENCE, family="orphans"):
    return Issue(collection=collection, record_id="d1", code=code, kind=kind, family=family, message="m")


# ─── WritePlanner ───────────────────────────────────────────────────────────


class TestWritePlanner:
    """Net per-document writes across evaluation passes."""

    def test_field_diff(self):
        assert field_diff({"a": 1, "b": 2}, {"a": 1, "b": 3, "c": 4}) == {"b": 3, "c": 4}
        assert field_diff({"a": 1, "logo": "blob:x"}, {"a": 1}) == {"logo": DELETE_FIELD}
        assert field_diff({"amount": 5.0}, {"amount": 5}) == {"amount": 5}

    def test_passes_fold_into_one_update(self, make_resolver):
        resolver = make_resolver({USERS: {"u1": {"role": "athlete"}}})
        planner = WritePlanner(resolver.fork())
        first = _update(USERS, "u1", families=("derive_from_parent",), orgId="o1")
        second = _update(USERS, "u1", families=("default_fill",), teamId="UNASSIGNED")
        for write in (first, second):
            planner.track(write)
            resolver.apply(write)

        planned = planner.plan(resolver)
        assert len(planned) == 1
        assert planned[0].correction.fields == {"orgId": "o1", "teamId": "UNASSIGNED"}
        assert planned[0].before == {"orgId": None, "teamId": None}
        assert planned[0].families == ["derive_from_parent", "default_fill"]

    def test_reverted_change_plans_nothing(self, make_resolver):
        resolver = make_resolver({TEAMS: {"t1": {"name": "Eagles"}}})
        planner = WritePlanner(resolver.fork())
        for name in ("Hawks", "Eagles"):
            write = _update(TEAMS, "t1", name=name)
            planner.track(write)
            resolver.apply(write)
        assert planner.plan(resolver) == []

    def test_create_and_delete(self, make_resolver):
        resolver = make_resolver({ATHLETES: {"a1": {"teamId": "t9"}}})
        planner = WritePlanner(resolver.fork())
        writes = [
            PlannedWrite(COACHES, "u1", CorrectionSet.create_record({"uid": "u1"}), families=["derived_entities"], source="users/u1"),
            PlannedWrite(ATHLETES, "a1", CorrectionSet.delete_record(), families=["orphans"]),
        ]
        for write in writes:
            planner.track(write)
            resolver.apply(write)

        planned = planner.plan(resolver)
        assert [(w.path, w.kind) for w in planned] == [
            ("athletes/a1", CorrectionKind.DELETE_RECORD),
            ("coaches/u1", CorrectionKind.CREATE_RECORD),
        ]
        assert planned[0].before == {"teamId": "t9"}
        assert planned[1].source == "users/u1"

    def test_sub_collections_planned_last(self, make_resolver):
        resolver = make_resolver({DONATIONS: {"d1": {"amount": 5.0}}})
        planner = WritePlanner(resolver.fork())
        writes = [
            PlannedWrite("campaigns/c1/public_donors", "d1", CorrectionSet.create_record({"amountCents": 5})),
            _update(DONATIONS, "d1", amount=5),
        ]
        for write in writes:
            planner.track(write)
            resolver.apply(write)
        assert [w.path for w in planner.plan(resolver)] == ["donations/d1", "campaigns/c1/public_donors/d1"]


# ─── ReconciliationReporter ─────────────────────────────────────────────────


class TestReporter:
    """Per collection/family tallies and the JSON report."""

    def test_tally_key_uses_group_name(self):
        assert tally_key("campaigns/c1/public_donors") == "public_donors"
        assert tally_key(USERS) == USERS

    def test_counts_by_collection_and_family(self):
        reporter = ReconciliationReporter("p1", dry_run=True)
        reporter.record_scanned(DONATIONS, 3)
        reporter.record_write(_update(DONATIONS, "d1", families=("currency", "orphans"), amount=5))
        reporter.record_write(PlannedWrite(DONATIONS, "d2", CorrectionSet.delete_record(), families=["orphans"]))
        reporter.record_issue(_issue())
        reporter.record_issue(_issue(code="DONATION_AMBIGUOUS_ORGID", kind=IssueKind.AMBIGUOUS_INFERENCE, family="derive_from_parent"))

        tally = reporter.tallies[DONATIONS].to_dict()
        assert tally["scanned"] == 3
        assert tally["corrected"] == 1
        assert tally["deleted"] == 1
        assert tally["flagged"] == 2
        assert tally["ambiguous"] == 1
        assert tally["families"]["orphans"] == {"corrected": 1, "created": 0, "deleted": 1, "flagged": 1, "ambiguous": 0}
        assert reporter.totals()["scanned"] == 3

    def test_stats_most_frequent_first(self):
        reporter = ReconciliationReporter("p1", dry_run=True)
        reporter.record_issue(_issue(code="A"))
        reporter.record_issue(_issue(code="B"))
        reporter.record_issue(_issue(code="B"))
        assert list(reporter.stats().items()) == [("B", 2), ("A", 1)]

    def test_build_report_shape(self):
        reporter = ReconciliationReporter("p1", dry_run=False)
        reporter.record_scanned(USERS, 2)
        reporter.record_write(_update(USERS, "u1", logo=DELETE_FIELD))
        report = reporter.build_report("completed", commit={"committed": 1}, features={"currency": True})

        assert report["meta"]["mode"] == "apply"
        assert report["meta"]["projectId"] == "p1"
        assert report["counts"] == {USERS: 2}
        assert report["writes"][0]["after"] == {"logo": "<DELETE_FIELD>"}
        assert report["commit"] == {"committed": 1}
        json.dumps(report, default=str)

    def test_summary_shows_before_and_after(self):
        reporter = ReconciliationReporter("p1", dry_run=True)
        write = _update(DONATIONS, "d1", families=("currency",), amount=2500)
        write.before = {"amount": 25}
        reporter.record_write(write)
        summary = reporter.generate_summary()

        assert "DRY RUN" in summary
        assert "amount: 25 -> 2500" in summary

    def test_write_report(self, tmp_path):
        report = ReconciliationReporter("p1", dry_run=True).build_report("completed")
        path = write_report(report, tmp_path / "out", "p1")

        assert path.name.startswith("sanitize_report_p1_")
        assert json.loads(path.read_text())["meta"]["projectId"] == "p1"

    def test_issue_severity_serialized(self):
        issue = Issue(
            collection=USERS,
            record_id="u1",
            code="USER_MISSING_ROLE",
            kind=IssueKind.MISSING_FIELD,
            family="normalize",
            message="role is missing",
            severity=Severity.ERROR,
        )
        assert issue.to_dict()["severity"] == "error"
        assert issue.to_dict()["recordId"] == "u1"
