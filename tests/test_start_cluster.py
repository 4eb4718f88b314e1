import importlib
import sys

import pytest

start_cluster = importlib.import_module("surplus_auctions.start_cluster")


def test_node_command_wires_ports_and_peers():
    cmd = start_cluster.node_command(1, 3, "127.0.0.1", 6000, 6100)
    assert cmd[:3] == [sys.executable, "-m", "surplus_auctions.server_grpc"]
    assert cmd[cmd.index("--port") + 1] == "6001"
    assert cmd[cmd.index("--raft-port") + 1] == "6101"
    assert cmd[cmd.index("--peers") + 1] == "127.0.0.1:6100,127.0.0.1:6102"


def test_start_server_and_main(monkeypatch):
    events = {"terminate_calls": 0, "kill_calls": 0}

    class DummyProc:
        def __init__(self, cmd):
            self.cmd = cmd
            self.returncode = None

        def terminate(self):
            events["terminate_calls"] += 1

        def kill(self):
            events["kill_calls"] += 1

        def poll(self):
            return None

    monkeypatch.setattr(start_cluster.subprocess, "Popen", DummyProc)
    monkeypatch.setattr(start_cluster, "running_procs", [])

    calls = {"n": 0}
    def fast_sleep(_):
        calls["n"] += 1
        if calls["n"] > 3:
            raise KeyboardInterrupt
    monkeypatch.setattr(start_cluster.time, "sleep", fast_sleep)

    addr = start_cluster.start_server(0, 2, "127.0.0.1", 6000, 6100)
    assert addr == "127.0.0.1:6000"
    assert len(start_cluster.running_procs) == 1

    start_cluster.main(["--servers", "2", "--base-port", "6000", "--base-raft-port", "6100"])
    assert len(start_cluster.running_procs) == 3

    monkeypatch.setattr(start_cluster.time, "sleep", lambda _: None)
    start_cluster.cleanup()
    assert events["terminate_calls"] == 3 and events["kill_calls"] == 3


def test_watch_nodes_reports_each_exit_once(monkeypatch, capsys):
    class Proc:
        def __init__(self, code):
            self.returncode = code

        def poll(self):
            return self.returncode

    monkeypatch.setattr(start_cluster, "running_procs", [Proc(None), Proc(3), Proc(None)])
    ticks = {"n": 0}
    def tick(_):
        ticks["n"] += 1
        if ticks["n"] == 2:
            start_cluster.running_procs[2].returncode = -9
        if ticks["n"] > 3:
            raise KeyboardInterrupt
    monkeypatch.setattr(start_cluster.time, "sleep", tick)

    with pytest.raises(KeyboardInterrupt):
        start_cluster.watch_nodes()
    out = capsys.readouterr().out
    assert out.count("Node 1 exited with status 3") == 1
    assert out.count("Node 2 exited with status -9") == 1
    assert "Node 0" not in out


def test_cleanup_skips_nodes_that_already_exited(monkeypatch):
    stopped = []

    class Proc:
        def __init__(self, name, code):
            self.name, self.code = name, code

        def poll(self):
            return self.code

        def terminate(self):
            stopped.append(("term", self.name))
            self.code = 0

        def kill(self):
            stopped.append(("kill", self.name))

    monkeypatch.setattr(start_cluster, "running_procs", [Proc("a", None), Proc("b", 1)])
    monkeypatch.setattr(start_cluster.time, "sleep", lambda _: None)
    start_cluster.cleanup()
    assert stopped == [("term", "a")]
