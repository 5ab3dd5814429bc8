"""
Forensic CLI Tests
==================

The offline reporter against saved snapshots.
"""

import json

import pytest

from lattice.forensic import build_parser, main
from lattice.persistence import dumps_snapshot, save_snapshot
from tests.fixtures import approved, make_clock, make_engine


@pytest.fixture
def engine():
    engine = make_engine(make_clock())
    proposal = engine.ops.propose_create("alice", "Alpha").unwrap()
    engine.ops.commit_proposal(proposal.proposal_id, approved()).unwrap()
    return engine


@pytest.fixture
def snapshot(engine, tmp_path):
    return str(save_snapshot(engine, tmp_path / "lattice.json"))


def node_id_of(engine):
    return engine.store.all_nodes()[0].node_id


class TestVerify:

    def test_clean_snapshot(self, snapshot, capsys):
        assert main(["verify", snapshot]) == 0
        out = capsys.readouterr().out
        assert "[PASS] Verified 3 events" in out
        assert "HEAD Hash" in out

    def test_tampered_snapshot(self, engine, tmp_path, capsys):
        data = json.loads(dumps_snapshot(engine))
        data['journal']['events'][1]['actor'] = "mallory"
        data['journal']['events'][1]['entity_id'] = "forged"
        path = tmp_path / "tampered.json"
        path.write_text(json.dumps(data), encoding="utf-8")

        assert main(["verify", str(path)]) == 1
        assert "[FAIL]" in capsys.readouterr().out

    def test_reports_compaction(self, engine, tmp_path, capsys):
        engine.journal.compact(retain_count=1).unwrap()
        path = str(save_snapshot(engine, tmp_path / "compacted.json"))
        assert main(["verify", path]) == 0
        assert "compaction(s) dropped 2 events" in capsys.readouterr().out


class TestLogAndExplain:

    def test_log_lists_events(self, snapshot, capsys):
        assert main(["log", snapshot]) == 0
        out = capsys.readouterr().out
        assert "SYSTEM_INIT" in out
        assert "NODE_CREATED" in out

    def test_log_limit(self, snapshot, capsys):
        assert main(["log", snapshot, "--limit", "1"]) == 0
        out = capsys.readouterr().out
        assert "NODE_CREATED" in out
        assert "SYSTEM_INIT" not in out

    def test_explain(self, engine, snapshot, capsys):
        node_id = node_id_of(engine)
        assert main(["explain", snapshot, node_id]) == 0
        out = capsys.readouterr().out
        assert f"HISTORY OF {node_id}" in out
        assert "Node created by alice" in out

    def test_explain_unknown_entity(self, snapshot, capsys):
        assert main(["explain", snapshot, "node_nothing"]) == 0
        assert "(no retained events)" in capsys.readouterr().out


class TestStatsAndErrors:

    def test_stats_is_json(self, snapshot, capsys):
        assert main(["stats", snapshot]) == 0
        stats = json.loads(capsys.readouterr().out)
        assert stats['ops']['nodes'] == 1
        assert stats['journal']['retained_events'] == 3

    def test_missing_file(self, tmp_path, capsys):
        assert main(["stats", str(tmp_path / "nope.json")]) == 1
        assert "[FAIL]" in capsys.readouterr().out

    def test_no_command(self, capsys):
        assert main([]) == 2

    def test_parser_requires_snapshot(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["verify"])
