from sqlalchemy import Column, String, Integer, ForeignKey, DateTime, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime

from .base import Base, JSON_TYPE


# --- Allocation units ---
# quota_counts:    group -> sessions that completed this unit
# reserved_counts: group -> sessions currently holding this unit
# version is bumped by every counter write and guards compare-and-swap updates.


class JobSetORM(Base):
    __tablename__ = "job_sets"

    job_set_id = Column(String, primary_key=True, index=True)
    form_id = Column(String, ForeignKey("forms.form_id"), nullable=False, index=True)
    short_id = Column(String, nullable=False)

    quota_counts = Column(JSON_TYPE, default=dict, nullable=False)
    reserved_counts = Column(JSON_TYPE, default=dict, nullable=False)
    version = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("form_id", "short_id", name="job_set_form_short_id_uq"),
    )

    form = relationship("FormORM", back_populates="job_sets")
    articles = relationship(
        "ArticleORM", back_populates="job_set", order_by="ArticleORM.position"
    )


class ArticleORM(Base):
    __tablename__ = "articles"

    article_id = Column(String, primary_key=True, index=True)
    form_id = Column(String, ForeignKey("forms.form_id"), nullable=False, index=True)
    short_id = Column(String, nullable=False)
    text = Column(Text, nullable=False)

    # NULL for individual articles
    job_set_id = Column(String, ForeignKey("job_sets.job_set_id"), nullable=True, index=True)
    # Import order, used to keep job-set members stable
    position = Column(Integer, default=0, nullable=False)

    quota_counts = Column(JSON_TYPE, default=dict, nullable=False)
    reserved_counts = Column(JSON_TYPE, default=dict, nullable=False)
    version = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("form_id", "short_id", name="article_form_short_id_uq"),
    )

    form = relationship("FormORM", back_populates="articles")
    job_set = relationship("JobSetORM", back_populates="articles")
