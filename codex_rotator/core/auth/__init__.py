from __future__ import annotations

import base64
import json
from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class OpenAIAuthClaims(BaseModel):
    model_config = ConfigDict(extra="ignore")

    chatgpt_account_id: str | None = None
    chatgpt_plan_type: str | None = None


class OpenAIProfileClaims(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: str | None = None


class OrganizationClaim(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None


class IdTokenClaims(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    email: str | None = None
    plan: str | None = None
    chatgpt_account_id: str | None = None
    chatgpt_plan_type: str | None = None
    organizations: list[OrganizationClaim] | None = None
    exp: int | float | None = None
    auth: OpenAIAuthClaims | None = Field(
        default=None,
        alias="https://api.openai.com/auth",
    )
    profile: OpenAIProfileClaims | None = Field(
        default=None,
        alias="https://api.openai.com/profile",
    )


@dataclass
class AccountClaims:
    account_id: str | None
    email: str | None
    plan_type: str | None


def extract_id_token_claims(token: str | None) -> IdTokenClaims | None:
    if not token:
        return None
    parts = token.split(".")
    if len(parts) != 3:
        return None
    payload = parts[1]
    padding = "=" * (-len(payload) % 4)
    try:
        decoded = base64.urlsafe_b64decode(payload + padding)
        data = json.loads(decoded)
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(data, dict):
        return None
    try:
        return IdTokenClaims.model_validate(data)
    except ValidationError:
        return None


def account_claims(claims: IdTokenClaims | None) -> AccountClaims:
    if claims is None:
        return AccountClaims(account_id=None, email=None, plan_type=None)
    auth_claims = claims.auth or OpenAIAuthClaims()
    organization_id = claims.organizations[0].id if claims.organizations else None
    email = claims.email or (claims.profile.email if claims.profile else None)
    return AccountClaims(
        account_id=claims.chatgpt_account_id or auth_claims.chatgpt_account_id or organization_id,
        email=email,
        plan_type=claims.plan or auth_claims.chatgpt_plan_type or claims.chatgpt_plan_type,
    )


def claims_from_token(token: str | None) -> AccountClaims:
    return account_claims(extract_id_token_claims(token))
