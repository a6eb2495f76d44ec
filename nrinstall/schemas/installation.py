from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, List, Any
from datetime import datetime
from enum import Enum


class VerificationCheckSpec(BaseModel):
    """Extra post-install check supplied with a request or in integrations.yml"""
    command: str = Field(..., min_length=1)
    expected_exit_code: int = 0
    description: str = ""
    retry_count: Optional[int] = Field(None, ge=0)
    retry_delay: Optional[float] = Field(None, ge=0)
    timeout: Optional[float] = Field(None, gt=0)


class InstallationRequest(BaseModel):
    """Install or uninstall one integration"""
    integration: str = Field(..., min_length=1, max_length=200)
    parameters: Dict[str, Any] = Field(default_factory=dict)
    license_key: Optional[str] = None  # Falls back to settings.LICENSE_KEY
    base_image: Optional[str] = None
    timeout: Optional[float] = Field(None, gt=0)
    verify: Optional[bool] = None  # None means settings.VERIFY_ENABLED
    rollback_on_error: Optional[bool] = None  # None means settings.ROLLBACK_ON_ERROR
    dry_run: bool = False
    env: Dict[str, str] = Field(default_factory=dict)
    verification_checks: List[VerificationCheckSpec] = Field(default_factory=list)


class InstallationResponse(BaseModel):
    """Structured result of an install/uninstall call; logs are masked"""
    success: bool
    message: str
    logs: List[str] = Field(default_factory=list)
    attempt_id: Optional[str] = None
    phase: Optional[str] = None
    phases: List[str] = Field(default_factory=list)
    error_kind: Optional[str] = None
    diagnostics: Optional[str] = None
    verification: Optional[Dict[str, Any]] = None


class RequestStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class InstallationStatus(BaseModel):
    """Status of an asynchronous installation request"""
    request_id: str
    integration: str
    status: RequestStatus = RequestStatus.PENDING
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    callback_url: Optional[str] = None
    result: Optional[InstallationResponse] = None
    error: Optional[str] = None

    model_config = ConfigDict(use_enum_values=False)
