"""Pydantic schemas for the session/chat API."""

from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class SessionCreate(BaseModel):
    """Request to open a chat session."""

    model_config = ConfigDict(populate_by_name=True)

    patient_scope: Optional[UUID] = Field(default=None, alias="patientScope")


class SessionReset(BaseModel):
    """Request to replace a session with a fresh one.

    Omitting ``patientScope`` keeps the previous session's scope;
    ``clearPatientScope`` drops it.
    """

    model_config = ConfigDict(populate_by_name=True)

    patient_scope: Optional[UUID] = Field(default=None, alias="patientScope")
    clear_patient_scope: bool = Field(default=False, alias="clearPatientScope")


class SessionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., serialization_alias="sessionId")
    patient_scope: Optional[str] = Field(default=None, serialization_alias="patientScope")


class MessageCreate(BaseModel):
    """A user question for the session."""

    text: str = Field(..., min_length=1, max_length=4000)


class MessageAccepted(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., serialization_alias="sessionId")
    message_id: str = Field(..., serialization_alias="messageId")
    status: str = "accepted"
