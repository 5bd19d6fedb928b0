import copy
import datetime as dt
from collections import defaultdict

import pytest

from rifas.core.settings import Settings
from rifas.services.container import build_services
from rifas.services.notifications import LoggingDispatcher

T0 = dt.datetime(2026, 3, 1, 12, 0, tzinfo=dt.timezone.utc)

BUYER = {"name": "Ana López", "email": "ana@example.com", "phone": "5512345678"}


class Clock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kw):
        self.now += dt.timedelta(**kw)


# ---------- Cliente Supabase falso (API fluida de postgrest) ----------
class FakeAPIError(Exception):
    def __init__(self, code, message):
        super().__init__(message)
        self.code = code


class FakeResponse:
    def __init__(self, data):
        self.data = data


def _get(row, col):
    if "->>" in col:
        parent, key = col.split("->>", 1)
        return (row.get(parent) or {}).get(key)
    return row.get(col)


class FakeQuery:
    def __init__(self, db, table):
        self.db = db
        self.table = table
        self.op = "select"
        self.payload = None
        self.on_conflict = None
        self.filters = []
        self._order = None
        self._limit = None

    def select(self, cols="*"):
        self.op = "select"
        return self

    def insert(self, rows):
        self.op, self.payload = "insert", rows
        return self

    def upsert(self, rows, on_conflict=None):
        self.op, self.payload, self.on_conflict = "upsert", rows, on_conflict
        return self

    def update(self, values):
        self.op, self.payload = "update", values
        return self

    def delete(self):
        self.op = "delete"
        return self

    def eq(self, col, value):
        self.filters.append(lambda r: _get(r, col) == value)
        return self

    def in_(self, col, values):
        values = list(values)
        self.filters.append(lambda r: _get(r, col) in values)
        return self

    def order(self, col, desc=False):
        self._order = (col, desc)
        return self

    def limit(self, n):
        self._limit = n
        return self

    def _matches(self, row):
        return all(f(row) for f in self.filters)

    def execute(self):
        self.db.calls.append((self.table, self.op))
        failure = self.db.fail_on.pop((self.table, self.op), None)
        if failure:
            raise failure

        rows = self.db.tables[self.table]
        if self.op == "select":
            out = [copy.deepcopy(r) for r in rows if self._matches(r)]
            if self._order:
                col, desc = self._order
                out.sort(key=lambda r: r.get(col) or "", reverse=desc)
            if self._limit is not None:
                out = out[: self._limit]
            return FakeResponse(out)

        if self.op == "insert":
            new = self.payload if isinstance(self.payload, list) else [self.payload]
            keys = self.db.unique.get(self.table)
            if keys:
                seen = {tuple(r.get(k) for k in keys) for r in rows}
                for r in new:
                    key = tuple(r.get(k) for k in keys)
                    if key in seen:
                        raise FakeAPIError("23505", "duplicate key value violates unique constraint")
                    seen.add(key)
            rows.extend(copy.deepcopy(new))
            return FakeResponse(copy.deepcopy(new))

        if self.op == "upsert":
            new = self.payload if isinstance(self.payload, list) else [self.payload]
            keys = [k.strip() for k in (self.on_conflict or "id").split(",")]
            for r in new:
                key = tuple(r.get(k) for k in keys)
                rows[:] = [x for x in rows if tuple(x.get(k) for k in keys) != key]
                rows.append(copy.deepcopy(r))
            return FakeResponse(copy.deepcopy(new))

        if self.op == "update":
            hit = [r for r in rows if self._matches(r)]
            for r in hit:
                r.update(self.payload)
            return FakeResponse(copy.deepcopy(hit))

        if self.op == "delete":
            hit = [r for r in rows if self._matches(r)]
            rows[:] = [r for r in rows if not self._matches(r)]
            return FakeResponse(hit)

        raise AssertionError(f"operación no soportada {self.op}")


class FakeSupabase:
    def __init__(self):
        self.tables = defaultdict(list)
        self.unique = {
            "ticket_reservations": ("raffle_id", "ticket_number"),
            "payment_events": ("provider", "provider_event_id"),
        }
        self.fail_on = {}
        self.calls = []

    def table(self, name):
        return FakeQuery(self, name)


# ---------- Fixtures ----------
@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def cfg():
    return Settings(
        environment="test",
        storage_backend="memory",
        admin_api_key="admin-test",
        notification_webhook_url="",
        enforce_amount_match=False,
        cleanup_interval_seconds=0,
        demo_raffle_id="rifa-test",
        demo_raffle_total=1000,
        demo_raffle_price=150,
        demo_raffle_sold=100,
        demo_raffle_seed=7,
        discount_tiers="3-4:5,5-9:10,10-19:15,20-49:20,50+:25",
        promo_codes="VIP:30",
        binance_webhook_secret="binance-test",
        binance_verify_signature=True,
        oxxo_webhook_secret="oxxo-test",
        oxxo_verify_signature=True,
        azteca_verify_signature=False,
        bancoppel_verify_signature=False,
    )


@pytest.fixture
def dispatcher():
    return LoggingDispatcher()


@pytest.fixture
def services(cfg, clock, dispatcher):
    return build_services(cfg, dispatcher=dispatcher, clock=clock)


@pytest.fixture
def buyer():
    return dict(BUYER)


@pytest.fixture
def free_numbers(services):
    def _free(k, raffle_id="rifa-test", start=0):
        out = []
        n = start
        while len(out) < k:
            if not services.inventory.is_occupied(raffle_id, n):
                out.append(n)
            n += 1
        return out
    return _free


@pytest.fixture
def fake_supabase():
    return FakeSupabase()
