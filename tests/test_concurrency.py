"""
Concurrency Tests
=================

Many threads against one engine: commits are exactly-once, the journal
stays gap-free, and duplicate edges lose cleanly.
"""

from concurrent.futures import ThreadPoolExecutor
import threading

from lattice.contracts.base import ErrorKind
from lattice.contracts.model import EdgeType, JournalEventType, ProposalStatus
from tests.fixtures import approved, make_actor, make_candidate, make_context, make_engine

WORKERS = 8


def run_parallel(fn, args):
    """One thread per argument, all released together."""
    barrier = threading.Barrier(len(args))

    def call(arg):
        barrier.wait()
        return fn(arg)

    with ThreadPoolExecutor(max_workers=len(args)) as pool:
        return list(pool.map(call, args))


class TestExactlyOnce:

    def test_same_proposal_committed_once(self):
        engine = make_engine()
        proposal = engine.ops.propose_create("alice", "Contested").unwrap()

        results = run_parallel(lambda _: engine.ops.commit_proposal(proposal.proposal_id, approved()),
                               list(range(WORKERS)))

        assert sum(r.is_success for r in results) == 1
        assert all(r.error.code == "proposal_not_pending" for r in results if r.is_failure)
        assert len(engine.ops.query_lattice().unwrap()) == 1
        assert engine.journal.query_by_type(JournalEventType.NODE_CREATED).unwrap().total == 1

    def test_commit_races_reject(self):
        engine = make_engine()
        proposal = engine.ops.propose_create("alice", "Raced").unwrap()
        pid = proposal.proposal_id

        def act(i):
            if i % 2:
                return engine.ops.reject_proposal(pid, "no")
            return engine.ops.commit_proposal(pid, approved())

        results = run_parallel(act, list(range(WORKERS)))
        assert sum(r.is_success for r in results) == 1
        final = engine.ops.get_proposal(pid).unwrap()
        assert final.status in (ProposalStatus.COMMITTED, ProposalStatus.REJECTED)
        terminal_events = [
            e for e in engine.journal.query_by_entity(pid).unwrap().events
            if e.event_type is not JournalEventType.PROPOSAL_CREATED
        ]
        assert len(terminal_events) == 1


class TestJournalUnderLoad:

    def test_parallel_commits_keep_sequence_contiguous(self):
        engine = make_engine()
        proposals = [engine.ops.propose_create("alice", f"Node {i}").unwrap() for i in range(40)]

        results = run_parallel(lambda p: engine.ops.commit_proposal(p.proposal_id, approved()), proposals)

        assert all(r.is_success for r in results)
        seqs = [e.seq for e in engine.journal.all_events()]
        assert seqs == list(range(1, len(seqs) + 1))
        assert engine.journal.verify_integrity().is_success
        node_ids = {r.value.result_entity_id for r in results}
        assert len(node_ids) == 40

    def test_parallel_score_mutations_are_not_lost(self):
        engine = make_engine()
        proposal = engine.ops.propose_create("alice", "Hot").unwrap()
        node_id = engine.ops.commit_proposal(proposal.proposal_id, approved()).unwrap().result_entity_id

        run_parallel(lambda _: engine.ops.apply_score_mutation(node_id, "cascade", "bump",
                                                               deltas={"resonance": 0.01}),
                     list(range(50)))

        node = engine.ops.read_node(node_id).unwrap()
        assert node.version == 51
        assert abs(node.resonance - 0.5) < 1e-9


class TestGraphUnderLoad:

    def test_duplicate_edge_race(self):
        engine = make_engine()
        results = run_parallel(lambda _: engine.edges.create_edge("A", "B", EdgeType.SUPPORTS),
                               list(range(WORKERS)))
        assert sum(r.is_success for r in results) == 1
        assert all(r.error.kind is ErrorKind.DUPLICATE for r in results if r.is_failure)
        assert len(engine.edges) == 1

    def test_activation_merge_is_atomic(self):
        engine = make_engine()
        run_parallel(lambda _: engine.activate("s", "N", 0.01), list(range(60)))
        entry = engine.activation.get_entry("s", "N").unwrap()
        assert entry.activation_count == 60
        assert abs(entry.score - 0.6) < 1e-9


class TestGatesUnderLoad:

    def test_identical_turns_accepted_once(self):
        engine = make_engine()
        actors = [make_actor(f"a{i}") for i in range(WORKERS)]
        ctx = make_context("s1", participants=actors)

        results = run_parallel(
            lambda actor: engine.submit_turn(make_candidate("Same claim", speaker_id=actor.actor_id), actor, ctx),
            actors
        )
        assert sum(r.passed for r in results) == 1
