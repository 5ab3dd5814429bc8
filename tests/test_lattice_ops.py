"""
Lattice Operations Tests
========================

Proposal lifecycle, fail-closed commits, journaling of every canonical
mutation, queries and the score fast path.
"""

import pytest

from lattice.contracts.base import ErrorKind
from lattice.contracts.model import (
    EdgeType,
    EditPayload,
    GateRule,
    JournalEventType,
    NodeStatus,
    NodeTier,
    Proposal,
    ProposalKind,
    ProposalStatus,
)
from tests.fixtures import approved, failing_trace, make_clock, make_ops, passing_trace


@pytest.fixture
def clock():
    return make_clock()


@pytest.fixture
def env(clock):
    return make_ops(clock)


@pytest.fixture
def ops(env):
    return env[0]


@pytest.fixture
def journal(env):
    return env[4]


def create_node(ops, title="Alpha", **kwargs):
    proposal = ops.propose_create("alice", title, **kwargs).unwrap()
    committed = ops.commit_proposal(proposal.proposal_id, approved()).unwrap()
    return committed.result_entity_id


class TestPropose:

    def test_create_is_staged_not_canonical(self, ops, journal):
        proposal = ops.propose_create("alice", "Alpha", tags=["x"]).unwrap()
        assert proposal.status is ProposalStatus.PENDING
        assert proposal.kind is ProposalKind.CREATE
        assert proposal.proposal_id.startswith("prop_")
        assert ops.read_staging(proposal.proposal_id).unwrap().title == "Alpha"
        assert ops.query_lattice().unwrap() == ()

        event = journal.all_events()[-1]
        assert event.event_type is JournalEventType.PROPOSAL_CREATED
        assert event.entity_id == proposal.proposal_id

    def test_create_validation(self, ops):
        assert ops.propose_create("", "x").error.code == "proposer_required"
        assert ops.propose_create("alice", "   ").error.code == "title_required"
        assert ops.propose_create("alice", "x", tier="legendary").error.code == "invalid_tier"

    def test_errors_do_not_depend_on_wall_time(self, ops, clock):
        """The same failure at two clock readings is the same error."""
        first = ops.propose_create("alice", "x", tier="legendary").error
        clock.advance(3600)
        second = ops.propose_create("alice", "x", tier="legendary").error
        assert first == second
        assert not hasattr(first, "timestamp")

    def test_create_caps_and_clamps(self, ops):
        payload = ops.propose_create("alice", "T" * 900, tags=[f"t{i}" for i in range(30)],
                                     resonance=4.0, coherence=-1.0).unwrap().payload
        assert len(payload.title) == 500
        assert len(payload.tags) == 20
        assert payload.resonance == 1.0
        assert payload.coherence == 0.0

    def test_edit_validation(self, ops):
        node_id = create_node(ops)
        missing = ops.propose_edit("alice", "node_missing", {"title": "x"})
        assert missing.error.kind is ErrorKind.NOT_FOUND
        assert missing.error.code == "target_not_found"
        assert ops.propose_edit("alice", node_id, {}).error.code == "empty_edit"
        bad = ops.propose_edit("alice", node_id, {"version": 9, "node_id": "y"})
        assert bad.error.code == "non_editable_field"
        assert bad.error.context_value("fields") == "node_id,version"

    def test_edge_validation(self, ops):
        assert ops.propose_edge("alice", "a", "a").error.code == "self_edge"
        assert ops.propose_edge("alice", "a", "").error.code == "source_and_target_required"
        assert ops.propose_edge("alice", "a", "b", "hates").error.code == "invalid_edge_type"

    def test_edit_values_checked_when_staged(self, ops):
        node_id = create_node(ops)
        bad = ops.propose_edit("bob", node_id, {"title": "Renamed", "tier": "bogus"})
        assert bad.error.kind is ErrorKind.INVALID_INPUT
        assert bad.error.code == "invalid_value"
        assert bad.error.context_value("field") == "tier"
        assert ops.propose_edit("bob", node_id, {"resonance": float("nan")}).error.code == "invalid_value"
        assert len(ops.list_proposals(kind=ProposalKind.EDIT)) == 0

    def test_nan_scores_rejected(self, ops):
        nan = float("nan")
        assert ops.propose_create("alice", "x", resonance=nan).error.code == "invalid_score"
        assert ops.propose_create("alice", "x", stability="high").error.code == "invalid_score"
        assert ops.propose_edge("alice", "a", "b", weight=nan).error.code == "invalid_score"
        assert ops.list_proposals() == ()

    def test_list_proposals(self, ops):
        ops.propose_create("alice", "A").unwrap()
        ops.propose_create("bob", "B").unwrap()
        ops.propose_edge("bob", "x", "y").unwrap()
        assert len(ops.list_proposals()) == 3
        assert len(ops.list_proposals(proposer="bob")) == 2
        assert len(ops.list_proposals(kind=ProposalKind.EDGE)) == 1
        assert len(ops.list_proposals(status=ProposalStatus.COMMITTED)) == 0


class TestCommit:

    def test_create_commit(self, ops, journal, clock):
        proposal = ops.propose_create("alice", "Alpha", tier=NodeTier.MEGA, scope="lore").unwrap()
        clock.advance(5)
        committed = ops.commit_proposal(proposal.proposal_id, approved(), committer="council").unwrap()

        assert committed.status is ProposalStatus.COMMITTED
        assert committed.committed_by == "council"
        assert committed.reviewed_at == clock.now()
        node = ops.read_node(committed.result_entity_id).unwrap()
        assert node.title == "Alpha"
        assert node.tier is NodeTier.MEGA
        assert node.version == 1
        assert node.owner_id == "alice"
        assert node.meta["_proposal_id"] == proposal.proposal_id

        event = journal.all_events()[-1]
        assert event.event_type is JournalEventType.NODE_CREATED
        assert event.entity_id == node.node_id
        assert event.payload_dict()['committed_by'] == "council"

        record = ops.commit_log()[-1]
        assert record.proposal_id == proposal.proposal_id
        assert record.journal_seq == event.seq
        assert record.gate_rules == (GateRule.IDENTITY_BINDING.value, GateRule.SCOPE_BINDING.value)

        assert ops.read_staging(proposal.proposal_id).error.code == "not_found_in_staging"

    def test_failed_trace_rejects_without_mutation(self, ops, journal):
        proposal = ops.propose_create("alice", "Alpha").unwrap()
        trace = (passing_trace(GateRule.IDENTITY_BINDING), failing_trace(GateRule.RISK_CHECK))
        result = ops.commit_proposal(proposal.proposal_id, trace)

        assert result.error.kind is ErrorKind.GATE_REJECTED
        assert result.error.context_value("blocking_rule") == GateRule.RISK_CHECK.value
        assert len(ops.query_lattice().unwrap()) == 0
        stored = ops.get_proposal(proposal.proposal_id).unwrap()
        assert stored.status is ProposalStatus.REJECTED
        assert stored.rejection_reason == "gate_failed:gate.risk_check"
        assert journal.all_events()[-1].event_type is JournalEventType.PROPOSAL_REJECTED

    def test_empty_trace_refused(self, ops):
        proposal = ops.propose_create("alice", "Alpha").unwrap()
        result = ops.commit_proposal(proposal.proposal_id, ())
        assert result.error.code == "gate_trace_required"
        assert ops.get_proposal(proposal.proposal_id).unwrap().status is ProposalStatus.PENDING

    def test_terminal_states_are_final(self, ops):
        proposal = ops.propose_create("alice", "Alpha").unwrap()
        ops.commit_proposal(proposal.proposal_id, approved()).unwrap()
        again = ops.commit_proposal(proposal.proposal_id, approved())
        assert again.error.kind is ErrorKind.CONFLICT
        assert again.error.code == "proposal_not_pending"
        assert ops.reject_proposal(proposal.proposal_id, "late").error.code == "proposal_not_pending"

    def test_unknown_proposal(self, ops):
        assert ops.commit_proposal("prop_nope", approved()).error.code == "proposal_not_found"
        assert ops.get_proposal("prop_nope").error.kind is ErrorKind.NOT_FOUND

    def test_reject(self, ops, journal):
        proposal = ops.propose_create("alice", "Alpha").unwrap()
        rejected = ops.reject_proposal(proposal.proposal_id, "off topic", rejected_by="mod").unwrap()
        assert rejected.status is ProposalStatus.REJECTED
        assert rejected.rejection_reason == "off topic"
        event = journal.all_events()[-1]
        assert event.actor == "mod"
        assert event.payload_dict()['reason'] == "off topic"


class TestEditCommit:

    def test_edit_bumps_version(self, ops, journal, clock):
        node_id = create_node(ops)
        clock.advance(10)
        edit = ops.propose_edit("bob", node_id, {"summary": "short", "tags": ["t"]}, reason="tidy").unwrap()
        ops.commit_proposal(edit.proposal_id, approved()).unwrap()

        node = ops.read_node(node_id).unwrap()
        assert node.summary == "short"
        assert node.tags == ["t"]
        assert node.version == 2
        event = journal.all_events()[-1]
        assert event.event_type is JournalEventType.NODE_UPDATED
        assert set(event.payload_dict()['fields']) == {"summary", "tags"}

    def test_status_edit_is_status_event(self, ops, journal, clock):
        node_id = create_node(ops)
        clock.advance(1)
        edit = ops.propose_edit("bob", node_id, {"status": "archived"}).unwrap()
        ops.commit_proposal(edit.proposal_id, approved()).unwrap()
        assert ops.read_node(node_id).unwrap().status is NodeStatus.ARCHIVED
        assert journal.all_events()[-1].event_type is JournalEventType.NODE_STATUS_CHANGED

    def test_bad_value_rejects_whole_edit(self, ops, journal, clock):
        """A pending edit restored with an invalid value applies none of its fields."""
        node_id = create_node(ops)
        clock.advance(1)
        ops.load_proposal(Proposal(
            proposal_id="prop_restored",
            kind=ProposalKind.EDIT,
            payload=EditPayload(edits=(("tier", "bogus"), ("title", "Renamed")), edited_at=clock.now()),
            proposer="bob",
            created_at=clock.now(),
            target_id=node_id
        ))

        result = ops.commit_proposal("prop_restored", approved())
        assert result.error.kind is ErrorKind.INVALID_INPUT
        assert result.error.code == "invalid_value"

        node = ops.read_node(node_id).unwrap()
        assert (node.title, node.tier, node.version) == ("Alpha", NodeTier.REGULAR, 1)
        assert ops.get_proposal("prop_restored").unwrap().status is ProposalStatus.REJECTED
        assert journal.all_events()[-1].event_type is JournalEventType.PROPOSAL_REJECTED

    def test_stale_edit_rejected(self, ops, clock):
        """An edit based on an older read than the last write is dropped."""
        node_id = create_node(ops)
        stale_read = clock.now()
        clock.advance(10)
        fresh = ops.propose_edit("bob", node_id, {"title": "Fresh"}).unwrap()
        ops.commit_proposal(fresh.proposal_id, approved()).unwrap()

        stale = ops.propose_edit("carol", node_id, {"title": "Stale"}, edited_at=stale_read).unwrap()
        result = ops.commit_proposal(stale.proposal_id, approved())
        assert result.error.code == "merge_conflict"
        assert result.error.context_value("proposal_id") == stale.proposal_id
        assert ops.get_proposal(stale.proposal_id).unwrap().rejection_reason == "apply_failed:merge_conflict"
        node = ops.read_node(node_id).unwrap()
        assert node.title == "Fresh"
        assert node.version == 2

    def test_concurrent_edit_held_and_resolved(self, ops, journal, clock):
        node_id = create_node(ops)
        clock.advance(10)
        at = clock.now()
        first = ops.propose_edit("bob", node_id, {"title": "Bob"}, edited_at=at).unwrap()
        second = ops.propose_edit("carol", node_id, {"title": "Carol"}, edited_at=at).unwrap()
        ops.commit_proposal(first.proposal_id, approved()).unwrap()
        assert ops.commit_proposal(second.proposal_id, approved()).is_failure

        conflicts = journal.query_by_type(JournalEventType.MERGE_CONFLICT).unwrap()
        assert conflicts.total == 1

        node = ops.resolve_conflict(node_id, "title", "Carol", "moderator").unwrap()
        assert node.title == "Carol"
        assert node.version == 3
        assert journal.all_events()[-1].event_type is JournalEventType.CONFLICT_RESOLVED


class TestEdgeCommit:

    def test_edge_between_existing_nodes(self, ops, env, journal):
        edges = env[2]
        a = create_node(ops, "A")
        b = create_node(ops, "B")
        proposal = ops.propose_edge("alice", a, b, EdgeType.SUPPORTS, weight=0.8).unwrap()
        committed = ops.commit_proposal(proposal.proposal_id, approved()).unwrap()

        edge = edges.get_edge(committed.result_entity_id).unwrap()
        assert (edge.source_id, edge.target_id, edge.weight) == (a, b, 0.8)
        assert edge.creator_source == "proposal"
        assert ops.read_node(a).unwrap().version == 1
        event = journal.all_events()[-1]
        assert event.event_type is JournalEventType.EDGE_ADDED
        assert event.touches(a) and event.touches(b)

    def test_missing_endpoint_rejects(self, ops, env):
        a = create_node(ops, "A")
        proposal = ops.propose_edge("alice", a, "node_ghost").unwrap()
        result = ops.commit_proposal(proposal.proposal_id, approved())
        assert result.error.code == "endpoint_not_found"
        assert len(env[2]) == 0

    def test_duplicate_edge_rejects(self, ops):
        a = create_node(ops, "A")
        b = create_node(ops, "B")
        first = ops.propose_edge("alice", a, b, "supports").unwrap()
        second = ops.propose_edge("bob", a, b, "supports").unwrap()
        ops.commit_proposal(first.proposal_id, approved()).unwrap()
        result = ops.commit_proposal(second.proposal_id, approved())
        assert result.error.kind is ErrorKind.DUPLICATE
        assert ops.get_proposal(second.proposal_id).unwrap().status is ProposalStatus.REJECTED


class TestQueryLattice:

    def test_filters(self, ops):
        create_node(ops, "A", tags=["x", "y"], scope="lore.heroes", resonance=0.8)
        create_node(ops, "B", tags=["y"], scope="lore", tier="mega")
        create_node(ops, "C", tags=["z"], scope="economy")

        titles = lambda result: [n.title for n in result.unwrap()]
        assert titles(ops.query_lattice(tags=["y"])) == ["A", "B"]
        assert titles(ops.query_lattice(scope="lore")) == ["A", "B"]
        assert titles(ops.query_lattice(tier="mega")) == ["B"]
        assert titles(ops.query_lattice(min_resonance=0.5)) == ["A"]
        assert titles(ops.query_lattice(limit=1)) == ["A"]

    def test_invalid_filter(self, ops):
        assert ops.query_lattice(status="deleted").error.code == "invalid_filter"
        assert ops.query_lattice(limit=0).error.code == "invalid_limit"

    def test_returns_copies(self, ops):
        node_id = create_node(ops)
        ops.query_lattice().unwrap()[0].title = "Mutated"
        assert ops.read_node(node_id).unwrap().title == "Alpha"


class TestScoreMutation:

    def test_deltas_clamped_and_journaled(self, ops, journal):
        node_id = create_node(ops, resonance=0.5)
        node = ops.apply_score_mutation(node_id, "cascade", "support added",
                                        deltas={"resonance": 0.7, "coherence": 0.2}).unwrap()
        assert node.resonance == 1.0
        assert node.coherence == 0.2
        assert node.version == 2
        event = journal.all_events()[-1]
        assert event.event_type is JournalEventType.NODE_SCORE_MUTATED
        assert event.payload_dict()['before'] == {"resonance": 0.5, "coherence": 0.0}

    def test_values(self, ops):
        node_id = create_node(ops)
        assert ops.apply_score_mutation(node_id, "cascade", "reset", values={"stability": 0.3}) \
            .unwrap().stability == 0.3

    def test_argument_errors(self, ops):
        node_id = create_node(ops)
        assert ops.apply_score_mutation(node_id, "a", "r").error.code == "deltas_or_values_required"
        assert ops.apply_score_mutation(node_id, "a", "r", deltas={"title": 1}).error.code == "invalid_score_field"
        assert ops.apply_score_mutation(node_id, "", "r", deltas={"resonance": 1}).error.code == "actor_required"
        assert ops.apply_score_mutation("node_x", "a", "r", deltas={"resonance": 1}).error.code == "node_not_found"

    def test_nan_leaves_node_untouched(self, ops, journal):
        node_id = create_node(ops, resonance=0.4)
        before = len(journal)
        result = ops.apply_score_mutation(node_id, "cascade", "bad", deltas={"resonance": float("nan")})
        assert result.error.code == "invalid_score"
        assert result.error.context_value("fields") == "resonance"
        node = ops.read_node(node_id).unwrap()
        assert (node.resonance, node.version) == (0.4, 1)
        assert len(journal) == before


class TestMetrics:

    def test_counts(self, ops):
        create_node(ops)
        pending = ops.propose_create("alice", "Pending").unwrap()
        rejected = ops.propose_create("alice", "Nope").unwrap()
        ops.reject_proposal(rejected.proposal_id, "no")
        metrics = ops.metrics()
        assert metrics['nodes'] == 1
        assert metrics['proposals_by_status'] == {'committed': 1, 'pending': 1, 'rejected': 1}
        assert metrics['staged'] == 1
        assert metrics['commit_log_size'] == 1
        assert metrics['counters']['proposals_created_total'] == 3
        assert ops.read_staging(pending.proposal_id).is_success
