"""GeneratedPost model for promotional posts created by the publishing pipeline."""

import uuid

from sqlalchemy import Column, DateTime, Index, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class GeneratedPost(Base):
    """Promotional post; read-only to the feedback loop."""

    __tablename__ = "generated_posts"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    product_id = Column(Integer, nullable=False, index=True)
    style = Column(String, nullable=True)
    channel_target = Column(String, nullable=True)
    channel_published = Column(String, nullable=True)
    status = Column(String, nullable=False, default="DRAFT", index=True)
    meta_post_id = Column(String, nullable=True)  # Graph media id once published
    published_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    feedback = relationship("PostFeedback", back_populates="post", uselist=False)

    __table_args__ = (
        Index("ix_generated_posts_status_published_at", "status", "published_at"),
    )
