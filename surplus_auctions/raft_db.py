"""raft_db.py
================
**Replicated** document store driven by :pypi:`pysyncobj` (Raft).

:class:`RaftDocumentStore` wraps a local :class:`~surplus_auctions.db.DocumentStore`
and exposes the same API.  Every mutation is decorated with
:func:`pysyncobj.replicated`, so it is appended to the Raft log and executed in
log order on each node.  That total order is what makes
:meth:`~surplus_auctions.db.DocumentStore.commit` a cluster-wide compare-and-swap:
two bids racing on one auction are applied one after the other on every
replica, and the loser sees a version mismatch.

Replicated methods must be deterministic, so callers generate ids and
timestamps before issuing a write.  Reads are served from the local replica.
"""
import logging

from pysyncobj import SyncObj, SyncObjConf, SyncObjException, replicated

from surplus_auctions.db import DocumentStore, Write
from surplus_auctions.errors import StoreUnavailable

log = logging.getLogger(__name__)

_FAILED = "__store_failed__"


def _default_conf(**overrides):
    opts = dict(
        autoTick=True,
        appendEntriesUseBatch=True,
        dynamicMembershipChange=True,
        commandsQueueSize=100000,
        appendEntriesPeriod=0.05,
        raftMinTimeout=1.0,
        raftMaxTimeout=2.0,
        electionTimeout=5.0,
        connectionRetryDelay=0.5,
        connectionTimeout=10.0,
        leaderFallbackTimeout=10.0,
        logCompactionMinEntries=10**12,
        logCompactionMinTime=10**12,
    )
    opts.update(overrides)
    return SyncObjConf(**opts)


class RaftDocumentStore(SyncObj):
    """Document store replicated across a Raft cluster.

    Parameters
    ----------
    self_address
        host:port string for this node's Raft endpoint.
    other_addresses
        List of host:port strings for peer nodes.
    db_path
        Local path of the SQLite file to use on this node.
    timeout
        Seconds to wait for a replicated command to be applied.
    conf_overrides
        Extra :class:`pysyncobj.SyncObjConf` options (tests shorten the
        election timeouts).
    """

    def __init__(self, self_address, other_addresses, db_path, timeout=5.0, **conf_overrides):
        super().__init__(self_address, other_addresses, _default_conf(**conf_overrides))
        self.__db = DocumentStore(db_path)
        self.__timeout = timeout

    def close(self):
        """Stop the Raft node and close the local SQLite connection."""
        self.destroy()
        self.__db.close()

    def has_leader(self) -> bool:
        return self._getLeader() is not None

    # ---------- replicated mutations ---------- #
    # A StoreUnavailable inside the apply step would kill the Raft tick
    # thread, so it is turned into a sentinel and re-raised by _call().
    @replicated
    def apply_commit(self, writes):
        try:
            return self.__db.commit(writes)
        except StoreUnavailable as e:
            return (_FAILED, str(e))

    @replicated
    def apply_patch(self, collection, doc_id, changes):
        try:
            return self.__db.patch(collection, doc_id, changes)
        except StoreUnavailable as e:
            return (_FAILED, str(e))

    def _call(self, name, method, *args):
        try:
            result = method(*args, sync=True, timeout=self.__timeout)
        except SyncObjException as e:
            reason = getattr(e, "errorCode", e)
            log.warning("replicated %s failed: %s", name, reason)
            raise StoreUnavailable(f"replication failed: {reason}") from e
        if isinstance(result, tuple) and result and result[0] == _FAILED:
            raise StoreUnavailable(result[1])
        return result

    # ---------- DocumentStore API ---------- #
    def create(self, collection, doc_id, body):
        return self._call("commit", self.apply_commit, [Write.create(collection, doc_id, body)])

    def commit(self, writes):
        return self._call("commit", self.apply_commit, list(writes))

    def patch(self, collection, doc_id, changes):
        return self._call("patch", self.apply_patch, collection, doc_id, dict(changes))

    def get(self, collection, doc_id):
        """Local read of one document."""
        return self.__db.get(collection, doc_id)

    def list_where(self, collection, **equals):
        """Local read of documents matching field equality."""
        return self.__db.list_where(collection, **equals)
