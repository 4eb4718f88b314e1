"""
start_cluster.py
================
Launch a local or distributed cluster of replicated auction servers that
serve **gRPC** and keep their document stores in step via **Raft**.

Each server is spawned as a separate Python subprocess, so the cluster can be
run entirely on one machine (handy for demos) or spread across several hosts
by passing a different ``--host`` value for each node.
"""
import argparse
import atexit
import subprocess
import sys
import time

GRACE_SECONDS = 0.5

# spawned node processes, in node-id order
running_procs = []


def cleanup():
    """Stop every spawned node: SIGTERM them all, wait once, SIGKILL stragglers."""
    alive = [p for p in running_procs if p.poll() is None]
    for proc in alive:
        try:
            proc.terminate()
        except ProcessLookupError:
            continue
    if alive:
        time.sleep(GRACE_SECONDS)
    for proc in alive:
        if proc.poll() is None:
            try:
                proc.kill()
            except ProcessLookupError:
                continue


atexit.register(cleanup)


def node_command(server_id, num_servers, host='127.0.0.1', base_port=50051, base_raft_port=50100):
    """Build the command line for node *server_id* of an *num_servers* cluster.

    Node *i* serves gRPC on ``base_port + i`` and Raft on ``base_raft_port + i``;
    its peers are every other node's Raft address.
    """
    peers = [f"{host}:{base_raft_port + i}" for i in range(num_servers) if i != server_id]
    return [
        sys.executable, "-m", "surplus_auctions.server_grpc",
        "--host", host,
        "--port", str(base_port + server_id),
        "--node-id", str(server_id),
        "--raft-port", str(base_raft_port + server_id),
        "--peers", ",".join(peers),
    ]


def start_server(server_id, num_servers, host='127.0.0.1', base_port=50051, base_raft_port=50100):
    """Spawn one node as a subprocess and return its ``"host:grpc_port"`` address."""
    cmd = node_command(server_id, num_servers, host, base_port, base_raft_port)
    print(f"Starting server {server_id} on {host}:{base_port + server_id} "
          f"(Raft: {host}:{base_raft_port + server_id})")
    proc = subprocess.Popen(cmd)
    running_procs.append(proc)
    return f"{host}:{base_port + server_id}"


def watch_nodes(poll_every=1.0):
    """Poll the children forever, reporting each node that exits exactly once."""
    reported = set()
    while True:
        time.sleep(poll_every)
        dead = {node_id: proc.returncode for node_id, proc in enumerate(running_procs)
                if node_id not in reported and proc.poll() is not None}
        for node_id, code in sorted(dead.items()):
            print(f"Node {node_id} exited with status {code}; the others keep serving")
        reported.update(dead)


def main(argv=None):
    """Parse CLI flags, launch the cluster and watch the children until Ctrl+C.

    A crashed node is reported once; the rest of the cluster keeps running.
    """
    parser = argparse.ArgumentParser(description="Start a cluster of replicated auction servers")
    parser.add_argument("--servers", type=int, default=3, help="Number of servers to start")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind servers to")
    parser.add_argument("--base-port", type=int, default=50051, help="Base port for gRPC servers")
    parser.add_argument("--base-raft-port", type=int, default=50100, help="Base port for Raft consensus")
    args = parser.parse_args(argv)

    print(f"Starting a cluster of {args.servers} servers...")
    server_addresses = []
    for i in range(args.servers):
        server_addresses.append(
            start_server(i, args.servers, args.host, args.base_port, args.base_raft_port))
        time.sleep(1)

    print("\nCluster started successfully!")
    print(f"Server addresses: {', '.join(server_addresses)}")
    print("\nPress Ctrl+C to stop the cluster...")

    try:
        watch_nodes()
    except KeyboardInterrupt:
        print("\nStopping the cluster...")


if __name__ == "__main__":
    main()
