"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses

Request fields are optional at the schema level so missing fields are
reported with the service's own {"error": ...} messages rather than a
generic 422.
"""

from typing import Dict, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Pydantic Request Models
# =============================================================================

class DeployTokenRequest(BaseModel):
    """Body of POST /api/deploy-token. Role fields are ledger addresses."""
    name: Optional[str] = Field(None, description="Token name")
    symbol: Optional[str] = Field(None, description="Token symbol")
    masterMinter: Optional[str] = Field(None, description="Master minter address")
    pauser: Optional[str] = Field(None, description="Pauser address")
    blacklister: Optional[str] = Field(None, description="Blacklister address")
    owner: Optional[str] = Field(None, description="Owner address")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "name": "Real Comunitário",
                    "symbol": "BRLC",
                    "masterMinter": "0x1111111111111111111111111111111111111111",
                    "pauser": "0x2222222222222222222222222222222222222222",
                    "blacklister": "0x3333333333333333333333333333333333333333",
                    "owner": "0x4444444444444444444444444444444444444444",
                }
            ]
        }
    }


class WhatsAppRequest(BaseModel):
    """Inbound conversational message (WhatsApp/USSD gateway)."""
    sessionId: Optional[str] = Field(None, description="Channel session identifier")
    phoneNumber: Optional[str] = Field(None, description="Sender phone number")
    text: Optional[str] = Field(None, description="Message text, may be empty")


class AuthVerifyRequest(BaseModel):
    phoneNumber: Optional[str] = Field(None, description="Phone number being verified")
    token: Optional[str] = Field(None, description="Token from the verification link")


# =============================================================================
# Pydantic Response Models
# =============================================================================

class DeployTokenResponse(BaseModel):
    success: bool = True
    proxy: str = Field(..., description="Proxy (token) address")
    implementation: str = Field(..., description="Implementation address")
    txHash: str = Field(..., description="Deployment transaction hash")
    gasUsed: str = Field(..., description="Gas used by the deployment")
    mode: str = Field(..., description="live or synthetic")


class ConnectBankResponse(BaseModel):
    success: bool = True
    connectUrl: str = Field(..., description="URL where the token owner links a bank account")
    expiresAt: Optional[str] = Field(None, description="Connect token expiry")


class WebhookAck(BaseModel):
    """Response model for processed aggregator webhooks."""
    ok: bool = True


class WhatsAppResponse(BaseModel):
    sessionEnd: bool = Field(False, description="True when the channel should close the session")
    message: str = Field(..., description="Reply text")


class AuthVerifyResponse(BaseModel):
    success: bool = True
    userId: str
    address: str


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    error: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    services: Optional[Dict[str, bool]] = Field(None, description="Collaborator availability")
    reason: Optional[str] = Field(None, description="Reason if not ready")
