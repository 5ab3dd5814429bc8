"""
Engine Scenario Tests
=====================

End-to-end flows through the LatticeEngine facade: governed writes,
retrieval, turn validation and promotion.
"""

import pytest

from lattice.contracts.base import ErrorKind
from lattice.contracts.model import (
    EdgeType,
    EditPayload,
    GateRule,
    JournalEventType,
    NodeTier,
    ParticipantRole,
    Proposal,
    ProposalKind,
    ProposalStatus,
)
from tests.fixtures import approved, make_actor, make_candidate, make_clock, make_context, make_engine


@pytest.fixture
def clock():
    return make_clock()


@pytest.fixture
def engine(clock):
    return make_engine(clock)


def commit_node(engine, title, proposer="alice", **kwargs):
    proposal = engine.ops.propose_create(proposer, title, **kwargs).unwrap()
    return engine.ops.commit_proposal(proposal.proposal_id, approved()).unwrap().result_entity_id


class TestGovernedWriteAndRetrieval:

    def test_create_link_activate_spread(self, engine):
        """
        Alpha is created and committed, linked to Beta by a 0.8 supports
        edge; activating Alpha at 0.9 and spreading one hop puts Beta in
        the working set at 0.9 * 0.6 * 1.0 * 0.8.
        """
        proposal = engine.ops.propose_create("alice", "Alpha").unwrap()
        assert engine.ops.read_node(proposal.proposal_id).error.kind is ErrorKind.NOT_FOUND

        n1 = engine.ops.commit_proposal(proposal.proposal_id, approved()).unwrap().result_entity_id
        assert engine.ops.read_node(n1).unwrap().title == "Alpha"
        created = engine.journal.query_by_type(JournalEventType.NODE_CREATED).unwrap()
        assert [e.entity_id for e in created.events] == [n1]

        n2 = commit_node(engine, "Beta")
        link = engine.ops.propose_edge("alice", n1, n2, EdgeType.SUPPORTS, weight=0.8).unwrap()
        engine.ops.commit_proposal(link.proposal_id, approved()).unwrap()

        engine.activate("s", n1, 0.9).unwrap()
        steps = engine.spread_activation("s", n1, max_hops=1).unwrap()
        assert [s.target_id for s in steps] == [n2]

        working_set = engine.get_working_set("s").unwrap()
        scores = {e.node_id: e.score for e in working_set}
        assert scores[n1] == pytest.approx(0.9)
        assert scores[n2] == pytest.approx(0.432)

        spread = engine.journal.query_by_type(JournalEventType.ACTIVATION_SPREAD).unwrap().events[0]
        assert spread.touches(n2)

    def test_explain_covers_lifecycle(self, engine, clock):
        node_id = commit_node(engine, "Alpha")
        clock.advance(30)
        edit = engine.ops.propose_edit("bob", node_id, {"summary": "s"}).unwrap()
        engine.ops.commit_proposal(edit.proposal_id, approved()).unwrap()
        engine.ops.apply_score_mutation(node_id, "cascade", "boost", deltas={"resonance": 0.1}).unwrap()

        history = engine.journal.explain(node_id).unwrap().history
        assert [h.event_type for h in history] == [
            JournalEventType.NODE_CREATED,
            JournalEventType.PROPOSAL_CREATED,
            JournalEventType.NODE_UPDATED,
            JournalEventType.NODE_SCORE_MUTATED,
        ]
        assert engine.ops.read_node(node_id).unwrap().version == 3

    def test_journal_starts_with_init(self, engine):
        first = engine.journal.all_events()[0]
        assert first.event_type is JournalEventType.SYSTEM_INIT
        assert first.seq == 1


class TestTurns:

    def test_fact_without_citation_blocked(self, engine):
        alice = make_actor("alice")
        ctx = make_context("s1", participants=(alice,))
        result = engine.submit_turn(make_candidate("The moon is cheese", label="fact"), alice, ctx)
        assert not result.passed
        assert result.blocking_rule is GateRule.DISCLOSURE_ENFORCEMENT

        event = engine.journal.all_events()[-1]
        assert event.event_type is JournalEventType.TURN_REJECTED
        assert event.payload_dict()['blocking_rule'] == GateRule.DISCLOSURE_ENFORCEMENT.value
        assert event.session_id == "s1"

    def test_accepted_turn_registers_content(self, engine):
        alice = make_actor("alice")
        ctx = make_context("s1", participants=(alice,))
        assert engine.submit_turn(make_candidate("Rivers flow north"), alice, ctx).passed
        assert engine.journal.all_events()[-1].event_type is JournalEventType.TURN_ACCEPTED
        repeat = engine.submit_turn(make_candidate("rivers  flow north"), alice, ctx)
        assert repeat.blocking_rule is GateRule.NOVELTY_CHECK


class TestPromotion:

    def test_promote_commits_with_full_trace(self, engine):
        alice = make_actor("alice")
        ctx = make_context("s1", participants=(alice,))
        proposal = engine.ops.propose_create("alice", "Promoted idea").unwrap()
        result = engine.promote(proposal.proposal_id, alice, make_candidate("Promoted idea"), ctx).unwrap()
        assert result.status is ProposalStatus.COMMITTED
        rules = [t.rule_id for t in result.gate_trace]
        assert rules[0] is GateRule.ANTI_ECHO
        assert len(rules) == 8

    def test_echo_chamber_rejects_proposal(self, engine):
        builders = (make_actor("alice"), make_actor("bob"))
        ctx = make_context("s1", participants=builders, turn_count=6)
        proposal = engine.ops.propose_create("alice", "Groupthink").unwrap()
        result = engine.promote(proposal.proposal_id, builders[0], make_candidate("Groupthink"), ctx)
        assert result.error.kind is ErrorKind.GATE_REJECTED
        assert result.error.context_value("blocking_rule") == GateRule.ANTI_ECHO.value
        assert engine.ops.get_proposal(proposal.proposal_id).unwrap().status is ProposalStatus.REJECTED
        assert engine.ops.query_lattice().unwrap() == ()

    def test_critic_present_allows_promotion(self, engine):
        people = (make_actor("alice"), make_actor("carol", role=ParticipantRole.CRITIC))
        ctx = make_context("s1", participants=people, turn_count=6, critique_turns=2)
        proposal = engine.ops.propose_create("alice", "Debated idea").unwrap()
        assert engine.promote(proposal.proposal_id, people[0], make_candidate("Debated idea"), ctx).is_success

    def test_gate_failure_during_promotion(self, engine):
        alice = make_actor("alice")
        ctx = make_context("s1", participants=(alice,))
        proposal = engine.ops.propose_create("alice", "Decree").unwrap()
        candidate = make_candidate("By my authority this stands")
        result = engine.promote(proposal.proposal_id, alice, candidate, ctx)
        assert result.error.context_value("blocking_rule") == GateRule.RISK_CHECK.value

    def test_unknown_proposal_leaves_content_unregistered(self, engine):
        alice = make_actor("alice")
        ctx = make_context("s1", participants=(alice,))
        candidate = make_candidate("Second attempt")
        missing = engine.promote("prop_does_not_exist", alice, candidate, ctx)
        assert missing.error.code == "proposal_not_found"

        proposal = engine.ops.propose_create("alice", "Second attempt").unwrap()
        assert engine.promote(proposal.proposal_id, alice, candidate, ctx).is_success
        again = engine.promote(proposal.proposal_id, alice, candidate, ctx)
        assert again.error.code == "proposal_not_pending"

    def test_failed_commit_can_be_retried(self, engine, clock):
        """A commit that fails after the gates pass does not burn the content hash."""
        alice = make_actor("alice")
        ctx = make_context("s1", participants=(alice,))
        node_id = commit_node(engine, "Alpha")
        clock.advance(1)
        engine.ops.load_proposal(Proposal(
            proposal_id="prop_restored",
            kind=ProposalKind.EDIT,
            payload=EditPayload(edits=(("tier", "bogus"),), edited_at=clock.now()),
            proposer="alice",
            created_at=clock.now(),
            target_id=node_id
        ))
        candidate = make_candidate("Alpha is a mega node")
        failed = engine.promote("prop_restored", alice, candidate, ctx)
        assert failed.error.code == "invalid_value"

        retry = engine.ops.propose_edit("alice", node_id, {"tier": "mega"}).unwrap()
        assert engine.promote(retry.proposal_id, alice, candidate, ctx).is_success
        assert engine.ops.read_node(node_id).unwrap().tier is NodeTier.MEGA

        # Registered once committed
        fresh = engine.ops.propose_edit("alice", node_id, {"summary": "again"}).unwrap()
        repeat = engine.promote(fresh.proposal_id, alice, candidate, ctx)
        assert repeat.error.context_value("blocking_rule") == GateRule.NOVELTY_CHECK.value


class TestIntrospection:

    def test_metrics_shape(self, engine):
        a = commit_node(engine, "A")
        b = commit_node(engine, "B")
        link = engine.ops.propose_edge("alice", a, b, "supports").unwrap()
        engine.ops.commit_proposal(link.proposal_id, approved()).unwrap()

        metrics = engine.metrics()
        assert set(metrics) == {'edges', 'activation', 'merge', 'journal', 'gates', 'ops', 'topology'}
        assert metrics['ops']['nodes'] == 2
        assert metrics['topology']['edge_count'] == 1
        assert metrics['topology']['has_cycles'] is False

    def test_audit_report(self, engine):
        commit_node(engine, "A")
        report = engine.get_audit_report()
        assert report['by_layer']['engine'] == 1
        assert report['by_layer']['ops'] == 1
