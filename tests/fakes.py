"""Test doubles shared by the suite: manual clock, dict-backed Redis, chain signers."""
import fnmatch
import time

from sidekick.errors import ConnectivityError, TransactionRevertedError
from sidekick.jobs.redis_queue import (
    CLAIM_TICK_SCRIPT,
    EXTEND_LOCK_SCRIPT,
    FINISH_TICK_SCRIPT,
    RELEASE_LOCK_SCRIPT,
)

TEST_SECRET = "test-secret"

CHAIN_ID = "421614"
CONTRACT = "0x" + "c0" * 20
USER_A = "0x" + "a1" * 20
USER_B = "0x" + "b2" * 20
USER_C = "0x" + "c3" * 20
SENDER = "0x" + "5e" * 20

START_MS = 1_700_000_000_000


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeClock:
    """Millisecond clock the tests move by hand."""

    def __init__(self, start: int = START_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


class FakeRedis:
    """Dict-backed stand-in for the redis-py commands the service uses (decode_responses=True)."""

    def __init__(self):
        self.data: dict = {}
        self.expiry: dict[str, float] = {}
        self.available = True

    # -- helpers --
    def _check(self):
        if not self.available:
            import redis
            raise redis.ConnectionError("Connection refused")

    def _purge_expired(self, key):
        deadline = self.expiry.get(key)
        if deadline is not None and time.time() * 1000 >= deadline:
            self.data.pop(key, None)
            self.expiry.pop(key, None)

    def _get(self, key, factory):
        self._purge_expired(key)
        if key not in self.data:
            self.data[key] = factory()
        return self.data[key]

    # -- generic --
    def ping(self):
        self._check()
        return True

    def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            self._purge_expired(key)
            if key in self.data:
                del self.data[key]
                self.expiry.pop(key, None)
                removed += 1
        return removed

    def scan_iter(self, match=None):
        self._check()
        for key in list(self.data):
            self._purge_expired(key)
            if key in self.data and (match is None or fnmatch.fnmatchcase(key, match)):
                yield key

    # -- strings --
    def incr(self, key):
        self._check()
        value = int(self.data.get(key, 0)) + 1
        self.data[key] = str(value)
        return value

    def get(self, key):
        self._check()
        self._purge_expired(key)
        return self.data.get(key)

    def set(self, key, value, nx=False, px=None):
        self._check()
        self._purge_expired(key)
        if nx and key in self.data:
            return None
        self.data[key] = str(value)
        if px is not None:
            self.expiry[key] = time.time() * 1000 + px
        return True

    def pexpire(self, key, ms):
        self._check()
        self._purge_expired(key)
        if key not in self.data:
            return 0
        self.expiry[key] = time.time() * 1000 + int(ms)
        return 1

    # -- scripting --
    def register_script(self, script):
        """Run the queue's Lua scripts as their Python equivalents."""
        scripts = {
            RELEASE_LOCK_SCRIPT: self._release_lock,
            EXTEND_LOCK_SCRIPT: self._extend_lock,
            CLAIM_TICK_SCRIPT: self._claim_tick,
            FINISH_TICK_SCRIPT: self._finish_tick,
        }
        func = scripts[script]

        def run(keys=None, args=None, client=None):
            self._check()
            return func(list(keys or []), [str(a) for a in (args or [])])

        return run

    def _release_lock(self, keys, args):
        if self.get(keys[0]) == args[0]:
            return self.delete(keys[0])
        return 0

    def _extend_lock(self, keys, args):
        if self.get(keys[0]) == args[0]:
            return self.pexpire(keys[0], args[1])
        return 0

    def _claim_tick(self, keys, args):
        schedule, active = keys
        repeat_key, expected, next_score, entry = args
        score = self.zscore(schedule, repeat_key)
        if score is None or float(score) != float(expected):
            return 0
        self.zadd(schedule, {repeat_key: float(next_score)}, xx=True)
        self.hset(active, repeat_key, entry)
        return 1

    def _finish_tick(self, keys, args):
        repeat, schedule, active = keys
        repeat_key, before, after, entry = args
        if self.hget(active, repeat_key) == entry:
            self.hdel(active, repeat_key)
        if self.hget(repeat, repeat_key) != before:
            return 0
        if after == "":
            self.hdel(repeat, repeat_key)
            self.zrem(schedule, repeat_key)
            return 2
        if self.zscore(schedule, repeat_key) is not None:
            self.hset(repeat, repeat_key, after)
            return 1
        return 0

    # -- hashes --
    def hset(self, name, key=None, value=None, mapping=None):
        self._check()
        h = self._get(name, dict)
        items = dict(mapping or {})
        if key is not None:
            items[key] = value
        added = sum(1 for k in items if k not in h)
        h.update({k: str(v) for k, v in items.items()})
        return added

    def hget(self, name, key):
        self._check()
        return self.data.get(name, {}).get(key)

    def hgetall(self, name):
        self._check()
        return dict(self.data.get(name, {}))

    def hdel(self, name, *keys):
        self._check()
        h = self.data.get(name, {})
        removed = 0
        for key in keys:
            if key in h:
                del h[key]
                removed += 1
        if name in self.data and not h:
            del self.data[name]
        return removed

    def hlen(self, name):
        self._check()
        return len(self.data.get(name, {}))

    # -- sorted sets --
    def zadd(self, name, mapping, xx=False, nx=False):
        self._check()
        z = self._get(name, dict)
        added = 0
        for member, score in mapping.items():
            if xx and member not in z:
                continue
            if nx and member in z:
                continue
            if member not in z:
                added += 1
            z[member] = float(score)
        if not z:
            del self.data[name]
        return added

    def zscore(self, name, member):
        self._check()
        return self.data.get(name, {}).get(member)

    def zrem(self, name, *members):
        self._check()
        z = self.data.get(name, {})
        removed = 0
        for member in members:
            if member in z:
                del z[member]
                removed += 1
        return removed

    def zrangebyscore(self, name, min, max):
        self._check()
        lo, hi = float(min), float(max)
        z = self.data.get(name, {})
        return [m for m, s in sorted(z.items(), key=lambda kv: (kv[1], kv[0])) if lo <= s <= hi]

    def zcount(self, name, min, max):
        return len(self.zrangebyscore(name, min, max))

    # -- lists --
    def lpush(self, name, *values):
        self._check()
        lst = self._get(name, list)
        for value in values:
            lst.insert(0, value)
        return len(lst)

    def ltrim(self, name, start, end):
        self._check()
        lst = self.data.get(name, [])
        self.data[name] = lst[start:] if end == -1 else lst[start:end + 1]
        return True

    def lrange(self, name, start, end):
        self._check()
        lst = self.data.get(name, [])
        return list(lst[start:] if end == -1 else lst[start:end + 1])

    def llen(self, name):
        self._check()
        return len(self.data.get(name, []))


class FakeSigner:
    """Chain signer double: records sends and answers receipts from configured sets."""

    address = SENDER

    def __init__(self, *, unreachable=False, revert_on_submit=(), revert_on_chain=(), fail_submit=(), unconfirmed=()):
        self.unreachable = unreachable
        self.revert_on_submit = {a.lower() for a in revert_on_submit}
        self.revert_on_chain = {a.lower() for a in revert_on_chain}
        self.fail_submit = {a.lower() for a in fail_submit}
        self.unconfirmed = {a.lower() for a in unconfirmed}
        self.sent: list[tuple[str, str, int]] = []
        self.receipt_checks: list[str] = []
        self._hash_to_recipient: dict[str, str] = {}

    def block_number(self) -> int:
        if self.unreachable:
            raise ConnectivityError("Chain 421614 unreachable: connection refused")
        return 1234

    def submit_transfer(self, contract_address, recipient, amount):
        if recipient.lower() in self.revert_on_submit:
            raise TransactionRevertedError("transfer would revert: ERC20: transfer amount exceeds balance")
        if recipient.lower() in self.fail_submit:
            raise ValueError("nonce too low")
        self.sent.append((contract_address, recipient, amount))
        tx_hash = "0x" + f"{len(self.sent):064x}"
        self._hash_to_recipient[tx_hash] = recipient.lower()
        return tx_hash, "0xa9059cbb" + recipient[2:].rjust(64, "0")

    def wait_for_receipt(self, tx_hash, timeout, poll_latency=2.0):
        self.receipt_checks.append(tx_hash)
        recipient = self._hash_to_recipient.get(tx_hash, "")
        if recipient in self.unconfirmed:
            return None
        return recipient not in self.revert_on_chain


class FakeSignerRegistry:
    def __init__(self, signer=None):
        self.signer = signer
        self.chains = [CHAIN_ID]

    def get_signer(self, chain_id):
        if self.signer is None:
            raise ConnectivityError(f"No RPC endpoint configured for chain {chain_id}")
        return self.signer


class ExplodingTransactionLog:
    """Transaction log whose every write fails."""

    def __init__(self):
        self.calls = 0

    def create_transaction(self, *args, **kwargs):
        self.calls += 1
        raise RuntimeError("database is locked")

    def update_status(self, *args, **kwargs):
        self.calls += 1
        raise RuntimeError("database is locked")


