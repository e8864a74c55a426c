from datetime import datetime
from enum import Enum
from typing import List

from pydantic import BaseModel, Field


class Role(str, Enum):
    INVESTOR = "investor"
    CREDITOR = "creditor"  # enterprise admin
    ADMIN = "admin"        # platform admin


class ChallengeRequest(BaseModel):
    address: str = Field(..., description="Wallet address requesting the challenge.", examples=["0x..."])

class ChallengeResponse(BaseModel):
    message: str = Field(..., description="The message the wallet has to sign.")
    nonce: str = Field(..., description="One-time nonce embedded in the message.")
    expires_at: datetime = Field(..., description="When the challenge stops being accepted.")

class VerifyRequest(BaseModel):
    address: str = Field(..., description="Wallet address that signed the challenge.")
    message: str = Field(..., description="The exact challenge message that was signed.")
    signature: str = Field(..., description="The hex-encoded signature provided by the user's wallet.")

class VerifyResponse(BaseModel):
    address: str = Field(..., description="The verified address of the user (checksum form).")
    token: str = Field(..., description="JWT access token for subsequent authenticated requests.")
    token_type: str = Field("bearer", description="Type of the token (always 'bearer').")
    roles: List[Role] = []
    expires_at: datetime

class SessionClaims(BaseModel):
    subject_address: str
    issued_at: datetime
    expires_at: datetime
    roles: List[Role] = []
    key_id: str | None = None

    def has_any_role(self, *roles: Role) -> bool:
        return any(role in self.roles for role in roles)
