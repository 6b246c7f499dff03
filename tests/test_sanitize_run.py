"""End-to-end tests for SanitizeRun against InMemoryRecordStore.

Covers idempotence, dry-run/apply equivalence, org propagation, the currency
unit, orphan link removal, ambiguity safety and the run state machine.
"""

import json
import threading
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from fundsweep.constants import (
    ATHLETES,
    CAMPAIGN_ATHLETES,
    CAMPAIGNS,
    COACHES,
    DONATIONS,
    DONORS,
    EXIT_FAILURE,
    EXIT_INTERRUPTED,
    EXIT_OK,
    TEAMS,
    USERS,
)
from fundsweep.errors import RunStateError, StoreError, TransientStoreError
from fundsweep.schemas.corrections import CorrectionKind
from fundsweep.schemas.issues import IssueKind, Severity
from fundsweep.services.sanitize_run import RunState, SanitizeRun
from sanitize import display_results

CREATED = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

# ─── Helpers ──────────────────────────────────────────────────────────────────


def _tenant() -> dict:
    """A small tenant with one of most kinds of drift."""
    return {
        TEAMS: {
            "t1": {"name": " Eagles ", "orgId": "o1", "code": "EAG"},
            "t2": {"name": "Hawks", "orgId": "o1", "code": "eag", "logoUrl": "blob:http://x/1"},
        },
        CAMPAIGNS: {
            "c1": {"name": "Spring", "teamId": "t1"},
            "c2": {"name": "Fall", "teamId": "t9"},
        },
        USERS: {
            "u1": {"role": "coach", "email": " Coach@Example.org ", "teamId": "t1"},
            "u2": {"role": "athlete", "uid": "u2"},
            "u3": {"role": "donor", "uid": "u3", "orgId": "o1", "teamId": "t1"},
            "u4": {"role": "super-admin", "uid": "u4"},
        },
        ATHLETES: {
            "a1": {"name": "Sam", "teamId": "t1", "userId": "u2"},
            "a2": {"name": "Lee"},
        },
        COACHES: {
            "x1": {"uid": ""},
        },
        CAMPAIGN_ATHLETES: {
            "ca1": {"campaignId": "c1", "athleteId": "a1"},
            "ca2": {"campaignId": "c1", "athleteId": "a9"},
            "ca3": {"campaignId": "c9", "athleteId": "a1"},
        },
        DONATIONS: {
            "d1": {
                "amount": 25,
                "campaignId": "c1",
                "status": "paid",
                "donorName": "Ann",
                "donorEmail": "A@B.org",
                "createdAt": "2024-01-01T00:00:00Z",
            },
            "d2": {
                "amountCents": 1500,
                "email": "x@y.org",
                "campaignId": "c1",
                "athleteId": "a9",
                "donorId": "dn1",
                "createdAt": "2024-01-02T00:00:00Z",
            },
            "d3": {"amount": 1999.0, "campaignId": "c9", "createdAt": "2024-01-03T00:00:00Z"},
        },
        DONORS: {
            "dn1": {"name": "Dana", "email": "DANA@x.org"},
        },
    }


@pytest.fixture
def full_policy(policy):
    return policy.with_features(convert_likely_dollars=True, donor_aggregates=True, public_donors=True)


def _run(store, settings, policy, **kwargs):
    return SanitizeRun(store, settings, policy, **kwargs).run()


def _apply(settings):
    return replace(settings, apply=True)


# ─── Testable properties ────────────────────────────────────────────────────


class TestReconciliationProperties:
    def test_second_apply_run_is_a_no_op(self, make_store, settings, full_policy):
        store = make_store(_tenant())
        first = _run(store, _apply(settings), full_policy)
        writes_after_first = store.write_count

        second = _run(store, _apply(settings), full_policy)

        assert first.exit_code == EXIT_OK
        assert len(first.planned) > 0
        assert second.planned == []
        assert second.passes == 1
        assert store.write_count == writes_after_first

    def test_dry_run_reports_exactly_what_apply_writes(self, make_store, settings, full_policy):
        dry_store = make_store(_tenant())
        apply_store = make_store(_tenant())

        dry = _run(dry_store, settings, full_policy)
        applied = _run(apply_store, _apply(settings), full_policy)

        dry_writes = json.dumps(dry.report["writes"], default=str, sort_keys=True)
        applied_writes = json.dumps(applied.report["writes"], default=str, sort_keys=True)
        assert dry_writes == applied_writes
        assert dry_store.write_count == 0
        assert dry_store.snapshot() == make_store(_tenant()).snapshot()
        assert applied.write_result.committed == len(applied.planned)

    def test_org_propagates_from_unique_ancestor(self, make_store, settings, full_policy):
        store = make_store(_tenant())
        _run(store, _apply(settings), full_policy)
        data = store.snapshot()

        assert data[CAMPAIGNS]["c1"]["orgId"] == "o1"
        assert data[ATHLETES]["a1"]["orgId"] == "o1"
        assert data[CAMPAIGN_ATHLETES]["ca1"]["orgId"] == "o1"
        assert data[CAMPAIGN_ATHLETES]["ca1"]["userId"] == "u2"
        assert data[DONATIONS]["d1"]["orgId"] == "o1"
        assert data[DONATIONS]["d1"]["teamId"] == "t1"
        assert data[USERS]["u1"]["orgId"] == "o1"

    def test_derivations_settle_across_passes(self, make_store, settings, full_policy):
        store = make_store(_tenant())
        result = _run(store, _apply(settings), full_policy)
        user = store.snapshot()[USERS]["u2"]

        # athleteId and teamId come from a1, orgId only once a1 has its own
        assert user["athleteId"] == "a1"
        assert user["teamId"] == "t1"
        assert user["orgId"] == "o1"
        assert result.passes >= 2
        assert [w.path for w in result.planned].count("users/u2") == 1

    def test_currency_unit(self, make_store, settings, full_policy):
        store = make_store(_tenant())
        _run(store, _apply(settings), full_policy)
        donations = store.snapshot()[DONATIONS]

        assert donations["d1"]["amount"] == 2500
        assert donations["d1"]["legacyAmount"] == 25
        assert donations["d1"]["amount"] == round(donations["d1"]["legacyAmount"] * 100)
        assert donations["d2"]["amount"] == 1500
        assert donations["d3"]["amount"] == 1999
        assert all(type(d["amount"]) is int for d in donations.values())

    def test_campaign_athlete_links_resolve_or_are_gone(self, make_store, settings, full_policy):
        store = make_store(_tenant())
        _run(store, _apply(settings), full_policy)
        data = store.snapshot()

        assert sorted(data[CAMPAIGN_ATHLETES]) == ["ca1"]
        for link in data[CAMPAIGN_ATHLETES].values():
            assert link["campaignId"] in data[CAMPAIGNS]
            assert link["athleteId"] in data[ATHLETES]

    def test_conflicting_parent_orgs_write_nothing(self, make_store, settings, policy):
        store = make_store(
            {
                CAMPAIGNS: {"c1": {"name": "Spring", "orgId": "A"}},
                ATHLETES: {"a1": {"name": "Sam", "orgId": "B"}},
                DONATIONS: {
                    "d1": {"campaignId": "c1", "athleteId": "a1", "amount": 500, "createdAt": "2024-01-01T00:00:00Z"}
                },
            }
        )
        result = _run(store, _apply(settings), policy)

        ambiguous = [i for i in result.issues if i.kind == IssueKind.AMBIGUOUS_INFERENCE]
        assert len(ambiguous) == 1
        assert ambiguous[0].code == "DONATION_AMBIGUOUS_ORGID"
        assert not any(w.path == "donations/d1" for w in result.planned)
        assert "orgId" not in store.snapshot()[DONATIONS]["d1"]

    def test_stale_org_realigned_with_only_ancestor(self, make_store, settings, policy):
        store = make_store(
            {
                TEAMS: {"t1": {"name": "Eagles", "orgId": "o1"}},
                ATHLETES: {"a1": {"name": "Sam", "teamId": "t1", "orgId": "stale-org"}},
            }
        )
        result = _run(store, _apply(settings), policy)

        assert store.snapshot()[ATHLETES]["a1"]["orgId"] == "o1"
        mismatch = [i for i in result.issues if i.code == "ATHLETE_ORG_MISMATCH_TEAM"]
        assert len(mismatch) == 1
        assert mismatch[0].severity == Severity.INFO
        assert _run(store, _apply(settings), policy).planned == []

    def test_nullified_orphan_still_reported(self, make_store, settings, policy):
        store = make_store(
            {
                CAMPAIGNS: {"c1": {"name": "Spring", "orgId": "o1"}},
                DONATIONS: {
                    "d1": {"campaignId": "c1", "athleteId": "ghost", "amount": 500, "createdAt": "2024-01-01T00:00:00Z"}
                },
            }
        )
        result = _run(store, _apply(settings), policy)

        assert store.snapshot()[DONATIONS]["d1"]["athleteId"] is None
        assert result.passes == 2
        assert result.report["stats"]["DONATION_ORPHAN_ATHLETE"] == 1
        assert result.report["tally"][DONATIONS]["families"]["orphans"]["flagged"] == 1

    def test_likely_dollars_with_orphan_campaign(self, make_store, settings, policy):
        store = make_store({DONATIONS: {"d1": {"amount": 25, "campaignId": "c1"}}})
        policy = policy.with_features(convert_likely_dollars=True)
        result = _run(store, _apply(settings), policy)

        donation = store.snapshot()[DONATIONS]["d1"]
        assert donation["amount"] == 2500
        assert donation["legacyAmount"] == 25
        assert donation["legacyCurrencyUnit"] == "dollars"
        assert donation["campaignId"] == "c1"
        assert "DONATION_ORPHAN_CAMPAIGN" in [i.code for i in result.issues]
        assert result.exit_code == EXIT_OK


# ─── Derived entities through a full run ────────────────────────────────────


class TestDerivedEntitiesRun:
    def test_coaches_rebuilt_and_invalid_removed(self, make_store, settings, full_policy):
        store = make_store(_tenant())
        _run(store, _apply(settings), full_policy)
        coaches = store.snapshot()[COACHES]

        assert "x1" not in coaches
        assert coaches["u1"]["teamId"] == "t1"
        assert coaches["u1"]["orgId"] == "o1"
        assert isinstance(coaches["u1"]["createdAt"], datetime)

    def test_public_donor_created_once(self, make_store, settings, full_policy):
        store = make_store(_tenant())
        first = _run(store, _apply(settings), full_policy)
        public = store.get_by_id("campaigns/c1/public_donors", "d1")

        assert public.data["amountCents"] == 2500
        assert public.data["displayName"] == "Ann"
        assert first.write_result.created >= 2  # coach u1 and the public donor
        assert _run(store, _apply(settings), full_policy).planned == []

    def test_donor_totals(self, make_store, settings, full_policy):
        store = make_store(_tenant())
        _run(store, _apply(settings), full_policy)
        donor = store.snapshot()[DONORS]["dn1"]

        assert donor["totalDonations"] == 1500
        assert donor["lastDonationAt"] == datetime(2024, 1, 2, tzinfo=timezone.utc)
        assert donor["email"] == "dana@x.org"


# ─── Run lifecycle ──────────────────────────────────────────────────────────


class TestRunLifecycle:
    def test_dry_run_states(self, make_store, settings, policy):
        result = _run(make_store(_tenant()), settings, policy)
        assert result.history == [
            RunState.PENDING,
            RunState.SCANNING,
            RunState.RESOLVING,
            RunState.EVALUATING,
            RunState.DRY_RUN_REPORT,
            RunState.REPORTING,
            RunState.DONE,
        ]
        assert result.report["meta"]["mode"] == "dry-run"
        assert result.report["meta"]["state"] == "completed"

    def test_apply_states(self, make_store, settings, policy):
        result = _run(make_store(_tenant()), _apply(settings), policy)
        assert RunState.COMMITTING in result.history
        assert RunState.DRY_RUN_REPORT not in result.history

    def test_illegal_transition(self, make_store, settings, policy):
        run = SanitizeRun(make_store(), settings, policy)
        with pytest.raises(RunStateError):
            run._transition(RunState.COMMITTING)

    def test_stop_before_evaluation_commits_nothing(self, make_store, settings, policy):
        store = make_store(_tenant())
        stop = threading.Event()
        stop.set()
        result = _run(store, _apply(settings), policy, stop_event=stop)

        assert result.exit_code == EXIT_INTERRUPTED
        assert result.interrupted
        assert store.write_count == 0
        assert RunState.COMMITTING not in result.history

    def test_commit_failure_reported(self, make_store, settings, policy):
        store = make_store(_tenant(), fail_on_commit=1)
        policy = policy.model_copy(update={"commit_retries": 0})
        result = _run(store, _apply(settings), policy)

        assert result.exit_code == EXIT_FAILURE
        assert result.report["commit"]["error"]["chunkIndex"] == 0
        assert result.report["meta"]["state"] == "failed"

    def test_scan_failure_still_reports(self, make_store, settings, policy):
        store = make_store(_tenant())

        def unavailable(collection):
            raise TransientStoreError("unavailable")

        store.get_all = unavailable
        result = _run(store, settings, policy)

        assert result.exit_code == EXIT_FAILURE
        assert result.history[-2:] == [RunState.REPORTING, RunState.DONE]
        assert "unavailable" in result.report["meta"]["error"]

    def test_denied_commit_still_reports(self, make_store, settings, policy):
        store = make_store(_tenant())

        def denied(ops):
            raise PermissionError("403 Missing or insufficient permissions")

        store.commit_batch = denied
        result = _run(store, _apply(settings), policy)

        assert result.exit_code == EXIT_FAILURE
        assert result.history[-3:] == [RunState.COMMITTING, RunState.REPORTING, RunState.DONE]
        assert result.report["meta"]["state"] == "failed"
        assert result.report["commit"]["error"]["chunkIndex"] == 0
        assert result.report["commit"]["error"]["paths"]
        assert result.report["commit"]["chunksCommitted"] == 0

    def test_denied_scan_still_reports(self, make_store, settings, policy):
        store = make_store(_tenant())

        def denied(collection):
            raise PermissionError("403 Missing or insufficient permissions")

        store.get_all = denied
        result = _run(store, settings, policy)

        assert result.exit_code == EXIT_FAILURE
        assert isinstance(result.error, StoreError)
        assert "403" in result.report["meta"]["error"]

    def test_summary_shows_abort_reason(self, make_store, settings, policy, capsys):
        store = make_store(_tenant())

        def denied(collection):
            raise PermissionError("403 Missing or insufficient permissions")

        store.get_all = denied
        display_results(_run(store, settings, policy))

        out = capsys.readouterr().out
        assert "Run aborted" in out
        assert "403" in out

    def test_summary_counts_rule_errors_from_report(self, make_store, settings, policy, capsys):
        result = _run(make_store(_tenant()), settings, policy)
        failed = dict(result.report["issues"][0], kind=IssueKind.RULE_ERROR.value)
        result.report["issues"].extend([failed, failed])
        display_results(result)

        assert "2 rule errors" in capsys.readouterr().out

    def test_collection_subset(self, make_store, settings, policy):
        store = make_store(_tenant())
        result = _run(store, replace(settings, collections=[DONATIONS]), policy)

        assert result.report["counts"] == {DONATIONS: 3}
        assert all(w.collection == DONATIONS for w in result.planned)
        assert all(i.collection == DONATIONS for i in result.issues)

    def test_report_written(self, make_store, settings, policy):
        result = _run(make_store(_tenant()), replace(settings, write_report=True), policy)

        assert result.report_path is not None
        saved = json.loads(result.report_path.read_text())
        assert saved["meta"]["projectId"] == "test-project"
        assert len(saved["writes"]) == len(result.planned)

    def test_deletes_and_creates_tallied(self, make_store, settings, full_policy):
        result = _run(make_store(_tenant()), settings, full_policy)
        tally = result.report["tally"]

        assert tally[CAMPAIGN_ATHLETES]["deleted"] == 2
        assert tally[COACHES]["deleted"] == 1
        assert tally[COACHES]["created"] == 1
        assert tally["public_donors"]["created"] == 1
        kinds = {w.path: w.kind for w in result.planned}
        assert kinds["coaches/u1"] == CorrectionKind.CREATE_RECORD
