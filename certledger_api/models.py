from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, Any, Optional


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SubmitRequest(_Request):
    cert_id: Optional[str] = Field(default=None, alias="certId")
    student_code: str = Field(alias="studentCode")
    student_name: str = Field(alias="studentName")
    institution_id: str = Field(alias="institutionId")
    institution_name: str = Field(alias="institutionName")
    course_name: str = Field(alias="courseName")
    grade: str
    issue_date: str = Field(alias="issueDate")
    expiry_date: Optional[str] = Field(default=None, alias="expiryDate")
    category: Optional[str] = None
    priority: str = "NORMAL"
    metadata: Dict[str, Any] = Field(default_factory=dict)
    document_b64: Optional[str] = Field(default=None, alias="documentB64")
    document_hash: Optional[str] = Field(default=None, alias="documentHash")

    def subject_data(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"priority", "document_b64", "document_hash"}, exclude_none=True)


class ProcessRequest(_Request):
    certificate_id: str = Field(alias="certificateId")
    action: str
    comments: Optional[str] = None
    signature: Optional[str] = None


class RevertRequest(_Request):
    reason: Optional[str] = None


class ResubmitRequest(_Request):
    corrections: Dict[str, Any] = Field(default_factory=dict)
    comments: Optional[str] = None


class VerificationLogRequest(_Request):
    lookup: str
    cert_id: Optional[str] = Field(default=None, alias="certId")
    found: bool = False
    is_valid: bool = Field(default=False, alias="isValid")
    tamper_state: Optional[str] = Field(default=None, alias="tamperState")
    verifier: Optional[str] = None


class RevocationRequest(_Request):
    cert_id: str = Field(alias="certId")
    reason: str
    description: str
    evidence: Optional[str] = None
    severity: Optional[str] = None
    is_public: bool = Field(default=True, alias="isPublic")


class TierDecisionRequest(_Request):
    tier: str
    decision: str
    comments: Optional[str] = None


class AppealRequest(_Request):
    reason: str
    evidence: Optional[str] = None


class AppealDecisionRequest(_Request):
    decision: str
    outcome: Optional[str] = None


class SubjectRequest(_Request):
    student_code: str = Field(alias="studentCode")
    full_name: str = Field(alias="fullName")
    institution_id: str = Field(alias="institutionId")
    email: Optional[str] = None
