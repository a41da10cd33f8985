"""ProductPerformance model: running performance score per product."""

from sqlalchemy import Column, DateTime, Float, Integer

from database import Base


class ProductPerformance(Base):
    """Rolling per-product score, never deleted by the feedback loop."""

    __tablename__ = "product_performance"

    product_id = Column(Integer, primary_key=True, autoincrement=False)
    perf_score = Column(Float, nullable=False, default=0.0)
    version = Column(Integer, nullable=False, default=0)  # Optimistic concurrency counter
    last_updated = Column(DateTime(timezone=True), nullable=False)
