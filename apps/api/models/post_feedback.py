"""PostFeedback model for engagement metrics collected per published post."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, JSON, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class PostFeedback(Base):
    """One feedback row per post; re-collection overwrites it in place."""

    __tablename__ = "post_feedback"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    generated_post_id = Column(String, ForeignKey("generated_posts.id"), nullable=False, unique=True)
    channel = Column(String, nullable=False)
    ig_media_id = Column(String, nullable=False, index=True)
    metrics = Column(JSON, nullable=True)
    note = Column(Text, nullable=True)  # Soft-failure note, e.g. stub substitution
    collected_at = Column(DateTime(timezone=True), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    post = relationship("GeneratedPost", back_populates="feedback")
