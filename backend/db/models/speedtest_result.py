"""Speed test result model.

Bandwidth columns hold bytes per second as reported by the measurement tool;
divide by 125000 for Mbps.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Float, String, func
from sqlalchemy.orm import Mapped, mapped_column

from db.base import BaseModel


class SpeedtestResult(BaseModel):
    """One completed speed measurement."""

    __tablename__ = "speedtest_results"

    download_speed: Mapped[int] = mapped_column(BigInteger, nullable=False)
    upload_speed: Mapped[int] = mapped_column(BigInteger, nullable=False)
    latency: Mapped[float] = mapped_column(Float, nullable=False)
    server_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    server_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    server_location: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    server_country: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    server_host: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    server_ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    result_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    packet_loss: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=func.now(), index=True
    )
