"""
Pydantic schemas for API request/response validation
"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime


# ============================================================================
# RESUME / CANCEL SCHEMAS
# ============================================================================

class ResumeRequest(BaseModel):
    """Callback from a form submission, approval decision or signature provider"""
    stepExecutionId: int = Field(..., description="ID of the pending step execution")
    decision: str = Field(..., description="approved | rejected")
    payload: Optional[Dict[str, Any]] = Field(default_factory=dict, description="Data merged into the step output")

    class Config:
        json_schema_extra = {
            "example": {
                "stepExecutionId": 42,
                "decision": "approved",
                "payload": {"crm": "12345-RS", "reviewer": "analyst@example.com"}
            }
        }


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class RunResultResponse(BaseModel):
    success: bool = True
    execution_id: int
    outcome: str
    error: Optional[str] = None
    suspended_step_id: Optional[int] = None
    nodes_executed: int = 0


# ============================================================================
# EXECUTION SCHEMAS
# ============================================================================

class ExecutionResponse(BaseModel):
    """Schema for execution response"""
    id: int
    workflow_id: int
    workflow_version: Optional[int]
    status: str
    engine_version: str
    started_by: Optional[str]
    current_node_id: Optional[str]
    context: Optional[Dict[str, Any]]
    error_message: Optional[str]
    queue_item_id: Optional[int]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class ExecutionListResponse(BaseModel):
    executions: List[ExecutionResponse]
    total: int


class StepExecutionResponse(BaseModel):
    id: int
    execution_id: int
    node_id: str
    node_type: str
    status: str
    input_data: Optional[Dict[str, Any]]
    output_data: Optional[Dict[str, Any]]
    error_message: Optional[str]
    started_at: datetime
    completed_at: Optional[datetime]

    class Config:
        from_attributes = True


class StepExecutionListResponse(BaseModel):
    execution_id: int
    steps: List[StepExecutionResponse]
    total: int


# ============================================================================
# QUEUE SCHEMAS
# ============================================================================

class QueueItemResponse(BaseModel):
    id: int
    workflow_id: int
    workflow_version: Optional[int]
    status: str
    attempts: int
    max_attempts: int
    error_message: Optional[str]
    available_at: Optional[datetime]
    processing_started_at: Optional[datetime]
    processed_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True
