"""
Workflow Model
Database models for workflow definitions and their immutable versions
"""

from sqlalchemy import Column, Integer, String, Text, JSON, DateTime, Boolean, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime
from typing import Any, Dict, Optional
from . import Base


class Workflow(Base):
    """
    Workflow Model

    Stores the current definition of a workflow as a directed graph.
    Every published version is also frozen in WorkflowVersion so queued runs
    execute the graph they were enqueued against.
    """
    __tablename__ = "workflows"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False, index=True)
    description = Column(Text, nullable=True)

    version = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=True)

    # Feature flag: run this workflow on the checkpointing engine (v2)
    use_engine_v2 = Column(Boolean, nullable=False, default=False)

    # JSON structure:
    # {
    #   "nodes": [
    #     {"id": "start", "type": "start"},
    #     {"id": "docs", "type": "form", "config": {"fields": ["crm", "cpf"]}},
    #     {"id": "review", "type": "approval", "config": {"assignees": ["analyst"]}},
    #     {"id": "notify", "type": "email", "config": {"to": "{email}", "subject": "..."}},
    #     {"id": "end", "type": "end"}
    #   ],
    #   "edges": [
    #     {"id": "e1", "source": "start", "target": "docs"},
    #     ...
    #   ]
    # }
    graph_definition = Column(JSON, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    versions = relationship(
        "WorkflowVersion",
        back_populates="workflow",
        cascade="all, delete-orphan",
        order_by="WorkflowVersion.version"
    )

    def graph_for_version(self, version: Optional[int]) -> Dict[str, Any]:
        """Graph frozen for `version`, falling back to the current graph."""
        if version is None or version == self.version:
            return self.graph_definition
        for snapshot in self.versions:
            if snapshot.version == version:
                return snapshot.graph_definition
        return self.graph_definition

    def __repr__(self):
        return f"<Workflow(id={self.id}, name='{self.name}', version={self.version})>"


class WorkflowVersion(Base):
    """Immutable snapshot of a workflow graph at a given version."""
    __tablename__ = "workflow_versions"
    __table_args__ = (
        UniqueConstraint("workflow_id", "version", name="uq_workflow_versions_workflow_version"),
    )

    id = Column(Integer, primary_key=True, index=True)
    workflow_id = Column(Integer, ForeignKey("workflows.id"), nullable=False, index=True)
    version = Column(Integer, nullable=False)
    graph_definition = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    workflow = relationship("Workflow", back_populates="versions")

    def __repr__(self):
        return f"<WorkflowVersion(workflow_id={self.workflow_id}, version={self.version})>"
