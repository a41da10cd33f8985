"""StylePerformance model: running totals per visual style and channel."""

from sqlalchemy import Column, DateTime, Float, Integer, String, UniqueConstraint

from database import Base


class StylePerformance(Base):
    """Additive style/channel aggregate; engagement is derived on every merge."""

    __tablename__ = "style_performance"

    id = Column(Integer, primary_key=True, autoincrement=True)
    style = Column(String, nullable=False)
    channel = Column(String, nullable=False)
    impressions = Column(Float, nullable=False, default=0.0)
    perf_score = Column(Float, nullable=False, default=0.0)
    engagement = Column(Float, nullable=False, default=0.0)
    version = Column(Integer, nullable=False, default=0)
    last_updated = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("style", "channel", name="uq_style_performance_style_channel"),
    )
