from pydantic import BaseModel, Field
from uuid import UUID
from typing import Optional

from ...models.sync_models import SessionState


class SignInRequest(BaseModel):
    """Request model for switching the engine to an authenticated user."""
    user_id: UUID = Field(..., description="Id of the user the auth provider signed in.")
    migrate_guest_data: bool = Field(True, description="Move the guest ledger into the account first.")


class SessionStateResponse(BaseModel):
    """Response model describing the current session."""
    state: SessionState
    user_id: Optional[UUID] = None
    pending_writes: int = Field(0, description="Writes applied locally but not confirmed remotely.")
    realtime_connected: bool = False
