import pytest

from pipewright.dag import build_dag, dependents, find_cycle, plan, topo_levels
from pipewright.dsl import job, sh
from pipewright.errors import ConfigurationError


def _job(name, needs=()):
    return job(name, sh("noop", "true"), needs=list(needs))


def test_plan_groups_independent_jobs_into_stages():
    jobs = [_job("build"), _job("lint"), _job("test", ["build"]), _job("deploy", ["test", "lint"])]
    assert plan(jobs) == [["build", "lint"], ["test"], ["deploy"]]


def test_build_dag_counts_unmet_needs():
    adj, indeg = build_dag([_job("a"), _job("b", ["a"]), _job("c", ["a", "b"])])
    assert adj["a"] == {"b", "c"}
    assert indeg == {"a": 0, "b": 1, "c": 2}


def test_unknown_need_is_rejected():
    with pytest.raises(ConfigurationError) as exc:
        build_dag([_job("a", ["ghost"])])
    assert exc.value.job == "a"
    assert "ghost" in exc.value.message


def test_duplicate_job_names_are_rejected():
    with pytest.raises(ConfigurationError, match="Duplicate"):
        build_dag([_job("a"), _job("a")])


def test_cycle_is_reported_with_its_members():
    jobs = [_job("a", ["c"]), _job("b", ["a"]), _job("c", ["b"]), _job("free")]
    with pytest.raises(ConfigurationError) as exc:
        plan(jobs)
    assert "cycle" in exc.value.message
    assert exc.value.details["stuck_jobs"] == ["a", "b", "c"]


def test_self_need_is_a_cycle():
    with pytest.raises(ConfigurationError, match="cycle"):
        plan([_job("a", ["a"])])


def test_find_cycle_returns_closed_path():
    adj = {"a": {"b"}, "b": {"c"}, "c": {"a"}, "d": {"a"}}
    cycle = find_cycle(adj, ["a", "b", "c", "d"])
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b", "c"}


def test_satisfied_needs_do_not_block():
    jobs = [_job("push", ["build"]), _job("deploy", ["push"])]
    adj, indeg = build_dag(jobs, satisfied=["build"])
    assert indeg == {"push": 0, "deploy": 1}
    assert topo_levels(adj, indeg) == [["push"], ["deploy"]]


def test_dependents_are_transitive():
    adj, _ = build_dag([_job("a"), _job("b", ["a"]), _job("c", ["b"]), _job("d")])
    assert dependents(adj, "a") == {"b", "c"}
    assert dependents(adj, "d") == set()
