from sqlalchemy import JSON, Boolean, Float, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from provider_gateway.db.base import Base


class BudgetAlertRow(Base):
    """A fired budget alert (threshold crossing or limit reached)."""

    __tablename__ = "budget_alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[float] = mapped_column(Float, nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)  # budget_warning | budget_exceeded
    period: Mapped[str] = mapped_column(String(16), nullable=False)  # daily | monthly
    period_key: Mapped[str] = mapped_column(String(16), nullable=False, index=True)  # 2026-10-16 | 2026-10
    used: Mapped[float] = mapped_column(Float, nullable=False)
    limit: Mapped[float] = mapped_column(Float, nullable=False)
    data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    acknowledged: Mapped[bool] = mapped_column(Boolean, default=False)
