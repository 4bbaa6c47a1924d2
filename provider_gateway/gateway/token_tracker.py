"""Token usage ledger and budget windows.

Every successful provider call is appended to ``usage_records`` exactly once
(``request_id`` is unique). Budget windows are the current UTC day and UTC
calendar month; each keeps a running total that equals the sum of in-window
ledger costs, accumulated in insertion order. Windows reset only when the
period key changes and are reloaded from the ledger at startup.

Alerts per window:
  - ``budget-alert`` once when used crosses ``alert_threshold * limit``
  - ``budget-exceeded`` once when used reaches ``limit``
"""

from __future__ import annotations

import asyncio
import csv
import io
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError

from provider_gateway.db.sqlite import MEMORY_PATH, create_sqlite_engine, make_session_factory, sqlite_health_check
from provider_gateway.gateway.config import BudgetConfig, LedgerConfig
from provider_gateway.gateway.events import EventBus, GatewayEvent
from provider_gateway.gateway.types import BudgetMode, ProviderProfile, UsageRecord
from provider_gateway.models.budget_alert import BudgetAlertRow
from provider_gateway.models.usage_record import UsageRow

logger = logging.getLogger(__name__)

DAILY = "daily"
MONTHLY = "monthly"

_EXPORT_COLUMNS = (
    "request_id",
    "timestamp",
    "provider",
    "model",
    "user_id",
    "input_tokens",
    "output_tokens",
    "total_tokens",
    "cost",
    "latency_ms",
    "success",
)


def period_key(period: str, ts: float) -> str:
    dt = datetime.fromtimestamp(ts, timezone.utc)
    return dt.strftime("%Y-%m-%d") if period == DAILY else dt.strftime("%Y-%m")


def period_start(period: str, ts: float) -> float:
    dt = datetime.fromtimestamp(ts, timezone.utc)
    if period == DAILY:
        start = dt.replace(hour=0, minute=0, second=0, microsecond=0)
    else:
        start = dt.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return start.timestamp()


@dataclass
class BudgetWindow:
    period: str
    limit: float | None
    alert_threshold: float
    key: str
    used: float = 0.0
    alerted: bool = False
    exceeded: bool = False

    @property
    def over_limit(self) -> bool:
        return self.limit is not None and self.used >= self.limit

    def reset(self, key: str) -> None:
        self.key = key
        self.used = 0.0
        self.alerted = False
        self.exceeded = False

    def status(self) -> dict:
        return {
            "period": self.period,
            "period_key": self.key,
            "used": self.used,
            "limit": self.limit,
            "remaining": (self.limit - self.used) if self.limit is not None else None,
            "percent": round(self.used / self.limit * 100, 2) if self.limit else 0.0,
            "alerted": self.alerted,
            "exceeded": self.exceeded,
        }


class TokenTracker:
    """Append-only usage ledger with budget alerting.

    ``track_usage`` is serialized by an asyncio.Lock so concurrent callers
    never lose an update or double-count a request.
    """

    def __init__(
        self,
        budgets: BudgetConfig | None = None,
        ledger: LedgerConfig | None = None,
        *,
        events: EventBus | None = None,
        profiles: dict[str, ProviderProfile] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.budgets = budgets or BudgetConfig()
        self.ledger = ledger or LedgerConfig()
        self._events = events
        self._profiles = profiles if profiles is not None else {}
        self._clock = clock
        self._lock = asyncio.Lock()

        now = clock()
        self._windows = {
            DAILY: BudgetWindow(DAILY, self.budgets.daily, self.budgets.alert_threshold, period_key(DAILY, now)),
            MONTHLY: BudgetWindow(
                MONTHLY, self.budgets.monthly, self.budgets.alert_threshold, period_key(MONTHLY, now)
            ),
        }

        self._engine = create_sqlite_engine(self.ledger.path or MEMORY_PATH)
        self._session_factory = make_session_factory(self._engine)

    @property
    def mode(self) -> BudgetMode:
        return self.budgets.mode

    # -- Startup ------------------------------------------------------------

    async def initialize(self) -> None:
        """Reload the current windows (totals and alert flags) from the ledger."""
        async with self._lock:
            now = self._clock()
            for window in self._windows.values():
                window.reset(period_key(window.period, now))
                costs, alerts = await asyncio.to_thread(self._load_window, window.period, window.key, now)
                for cost in costs:
                    window.used += cost
                window.alerted = "budget_warning" in alerts
                window.exceeded = "budget_exceeded" in alerts
            logger.info(
                "Budget windows loaded: daily=%.4f monthly=%.4f",
                self._windows[DAILY].used,
                self._windows[MONTHLY].used,
            )

    # -- Write path ---------------------------------------------------------

    async def track_usage(self, record: UsageRecord) -> bool:
        """Append a usage record. Returns False for a duplicate request_id."""
        async with self._lock:
            inserted = await asyncio.to_thread(self._insert_record, record)
            if not inserted:
                logger.debug("Duplicate usage record %s ignored", record.request_id)
                return False

            self._roll_windows(self._clock())
            if record.success:
                for window in self._windows.values():
                    if period_key(window.period, record.timestamp) == window.key:
                        window.used += record.cost

            for alert in self._check_limits():
                await asyncio.to_thread(self._insert_alert, alert)
                event = GatewayEvent.BUDGET_EXCEEDED if alert["type"] == "budget_exceeded" else GatewayEvent.BUDGET_ALERT
                logger.warning(
                    "Budget %s (%s): used %.4f of %.4f",
                    alert["type"],
                    alert["period"],
                    alert["used"],
                    alert["limit"],
                )
                if self._events is not None:
                    self._events.emit(event, **alert)
            return True

    def _roll_windows(self, now: float) -> None:
        for window in self._windows.values():
            key = period_key(window.period, now)
            if key != window.key:
                logger.info("Budget window %s rolled over %s -> %s", window.period, window.key, key)
                window.reset(key)

    def _check_limits(self) -> list[dict]:
        alerts: list[dict] = []
        for window in self._windows.values():
            if window.limit is None:
                continue
            ratio = window.used / window.limit
            if ratio >= window.alert_threshold and not window.alerted:
                window.alerted = True
                alerts.append(self._alert("budget_warning", window, ratio))
            if ratio >= 1.0 and not window.exceeded:
                window.exceeded = True
                alerts.append(self._alert("budget_exceeded", window, ratio))
        return alerts

    @staticmethod
    def _alert(kind: str, window: BudgetWindow, ratio: float) -> dict:
        return {
            "type": kind,
            "period": window.period,
            "period_key": window.key,
            "used": window.used,
            "limit": window.limit,
            "percent": round(ratio * 100, 2),
        }

    # -- Read path ----------------------------------------------------------

    def calculate_cost(self, provider: str, model: str, input_tokens: int, output_tokens: int) -> float:
        profile = self._profiles.get(provider)
        if profile is None:
            return 0.0
        return profile.calculate_cost(model, input_tokens, output_tokens)

    def is_budget_exceeded(self) -> bool:
        self._roll_windows(self._clock())
        return any(w.over_limit for w in self._windows.values())

    def get_budget_status(self) -> dict:
        self._roll_windows(self._clock())
        return {
            DAILY: self._windows[DAILY].status(),
            MONTHLY: self._windows[MONTHLY].status(),
            "alert_threshold": self.budgets.alert_threshold,
            "mode": self.budgets.mode.value,
            "alert_triggered": any(w.alerted for w in self._windows.values()),
            "exceeded": any(w.over_limit for w in self._windows.values()),
        }

    async def get_usage_stats(self, start: float | None = None, end: float | None = None) -> dict:
        """Totals plus breakdowns by provider, model and user for [start, end]."""
        end = end if end is not None else self._clock()
        start = start if start is not None else period_start(DAILY, end)
        return await asyncio.to_thread(self._usage_stats, start, end)

    async def get_provider_comparison(self, start: float | None = None, end: float | None = None) -> dict:
        stats = await self.get_usage_stats(start, end)
        providers = [
            {
                "name": name,
                "tokens": data["tokens"],
                "cost": data["cost"],
                "requests": data["requests"],
                "average_cost_per_request": data["cost"] / data["requests"] if data["requests"] else 0.0,
                "average_tokens_per_request": data["tokens"] / data["requests"] if data["requests"] else 0.0,
            }
            for name, data in stats["by_provider"].items()
        ]
        providers.sort(key=lambda p: p["cost"], reverse=True)
        return {
            "providers": providers,
            "total_cost": stats["total"]["cost"],
            "total_tokens": stats["total"]["tokens"],
            "total_requests": stats["total"]["requests"],
        }

    async def export_usage(self, start: float | None = None, end: float | None = None, fmt: str = "json") -> str:
        if fmt == "json":
            return json.dumps(await self.get_usage_stats(start, end), indent=2)
        if fmt == "csv":
            end = end if end is not None else self._clock()
            start = start if start is not None else 0.0
            rows = await asyncio.to_thread(self._usage_rows, start, end)
            buf = io.StringIO()
            writer = csv.writer(buf)
            writer.writerow(_EXPORT_COLUMNS)
            writer.writerows(rows)
            return buf.getvalue()
        raise ValueError(f"Unsupported export format: {fmt}")

    async def cleanup_old_data(self, retention_days: int | None = None) -> int:
        days = retention_days or self.ledger.retention_days
        cutoff = self._clock() - days * 86_400
        deleted = await asyncio.to_thread(self._delete_before, cutoff)
        if deleted:
            logger.info("Deleted %d usage records older than %d days", deleted, days)
        return deleted

    async def storage_ok(self) -> bool:
        return await asyncio.to_thread(sqlite_health_check, self._engine)

    async def close(self) -> None:
        await asyncio.to_thread(self._engine.dispose)

    # -- Storage (runs in a worker thread) ----------------------------------

    def _insert_record(self, record: UsageRecord) -> bool:
        with self._session_factory() as session:
            session.add(
                UsageRow(
                    request_id=record.request_id,
                    timestamp=record.timestamp,
                    provider=record.provider,
                    model=record.model,
                    user_id=record.user_id,
                    input_tokens=record.input_tokens,
                    output_tokens=record.output_tokens,
                    total_tokens=record.total_tokens,
                    cost=record.cost,
                    latency_ms=record.latency_ms,
                    success=record.success,
                )
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
        return True

    def _insert_alert(self, alert: dict) -> None:
        with self._session_factory() as session:
            session.add(
                BudgetAlertRow(
                    timestamp=self._clock(),
                    type=alert["type"],
                    period=alert["period"],
                    period_key=alert["period_key"],
                    used=alert["used"],
                    limit=alert["limit"],
                    data=alert,
                )
            )
            session.commit()

    def _load_window(self, period: str, key: str, now: float) -> tuple[list[float], set[str]]:
        start = period_start(period, now)
        with self._session_factory() as session:
            costs = session.scalars(
                select(UsageRow.cost)
                .where(UsageRow.timestamp >= start, UsageRow.success.is_(True))
                .order_by(UsageRow.id)
            ).all()
            alerts = session.scalars(
                select(BudgetAlertRow.type).where(
                    BudgetAlertRow.period == period, BudgetAlertRow.period_key == key
                )
            ).all()
        return list(costs), set(alerts)

    def _usage_stats(self, start: float, end: float) -> dict:
        in_range = (UsageRow.timestamp >= start, UsageRow.timestamp <= end)

        def _grouped(session, column) -> dict:
            rows = session.execute(
                select(
                    column,
                    func.count(UsageRow.id),
                    func.coalesce(func.sum(UsageRow.input_tokens), 0),
                    func.coalesce(func.sum(UsageRow.output_tokens), 0),
                    func.coalesce(func.sum(UsageRow.total_tokens), 0),
                    func.coalesce(func.sum(UsageRow.cost), 0.0),
                )
                .where(*in_range)
                .group_by(column)
                .order_by(column)
            ).all()
            return {
                (key if key is not None else "anonymous"): {
                    "requests": requests,
                    "input_tokens": int(inp),
                    "output_tokens": int(out),
                    "tokens": int(total),
                    "cost": float(cost),
                }
                for key, requests, inp, out, total, cost in rows
            }

        with self._session_factory() as session:
            total = session.execute(
                select(
                    func.count(UsageRow.id),
                    func.coalesce(func.sum(UsageRow.input_tokens), 0),
                    func.coalesce(func.sum(UsageRow.output_tokens), 0),
                    func.coalesce(func.sum(UsageRow.total_tokens), 0),
                    func.coalesce(func.sum(UsageRow.cost), 0.0),
                    func.coalesce(func.avg(UsageRow.latency_ms), 0.0),
                ).where(*in_range)
            ).one()
            return {
                "start": start,
                "end": end,
                "total": {
                    "requests": total[0],
                    "input_tokens": int(total[1]),
                    "output_tokens": int(total[2]),
                    "tokens": int(total[3]),
                    "cost": float(total[4]),
                    "avg_latency_ms": round(float(total[5]), 1),
                },
                "by_provider": _grouped(session, UsageRow.provider),
                "by_model": _grouped(session, UsageRow.model),
                "by_user": _grouped(session, UsageRow.user_id),
            }

    def _usage_rows(self, start: float, end: float) -> list[tuple]:
        columns = [getattr(UsageRow, name) for name in _EXPORT_COLUMNS]
        with self._session_factory() as session:
            rows = session.execute(
                select(*columns)
                .where(UsageRow.timestamp >= start, UsageRow.timestamp <= end)
                .order_by(UsageRow.id)
            ).all()
        return [tuple(r) for r in rows]

    def _delete_before(self, cutoff: float) -> int:
        with self._session_factory() as session:
            result = session.execute(delete(UsageRow).where(UsageRow.timestamp < cutoff))
            session.commit()
            return result.rowcount or 0
