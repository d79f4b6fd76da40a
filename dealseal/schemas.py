from pydantic import BaseModel, Field
from typing import Dict, List, Optional


class TermIn(BaseModel):
    label: str
    value: str
    type: str = "text"


class CreateDealRequest(BaseModel):
    title: str
    recipient_name: str
    terms: List[TermIn] = Field(default_factory=list)
    trust_level: str = "basic"
    recipient_email: Optional[str] = None
    recipient_id: Optional[str] = None
    description: Optional[str] = None


class VerificationProof(BaseModel):
    type: str
    target: str
    code: str


class ConfirmRequest(BaseModel):
    token: str
    signature: str
    verification_proofs: List[VerificationProof] = Field(default_factory=list)


class SendCodeRequest(BaseModel):
    type: str
    target: str


class VerifyCodeRequest(BaseModel):
    type: str
    target: str
    code: str


class SigningEventRequest(BaseModel):
    token: str
    signature_kind: str = "typed"


class NudgeRequest(BaseModel):
    creator_name: Optional[str] = None


class ReceiptRequest(BaseModel):
    email: str
    token: Optional[str] = None


def proofs_as_dicts(proofs: List[VerificationProof]) -> List[Dict[str, str]]:
    return [p.model_dump() for p in proofs]
