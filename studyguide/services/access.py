"""
Access gate: admin bearer tokens and consumable demo codes.

Jobs remember the access they were created under; every later call against a
job is authorized against that stored access, never against whatever the
caller presents fresh.
"""

import hmac
import logging
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from studyguide.models.job import JobAccess
from studyguide.utils.errors import (
    AccessDeniedError,
    AccessError,
    InvalidAccessCodeError,
    MissingAccessCodeError,
)

logger = logging.getLogger(__name__)

DEMO_CODES_TABLE = "demo_codes"


def normalize_demo_code(code: str) -> str:
    return code.strip().upper()


def parse_bearer_token(header: Optional[str]) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer`` header."""
    if not header or not header.lower().startswith("bearer "):
        return None
    token = header[len("bearer ") :].strip()
    return token or None


def tokens_match(expected: str, presented: Optional[str]) -> bool:
    if not expected or not presented:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), presented.encode("utf-8"))


@runtime_checkable
class DemoCodeLedger(Protocol):
    """Remaining-use counters for demo codes."""

    async def remaining(self, code: str) -> Optional[int]:
        """Remaining uses, or None for an unknown code."""
        ...

    async def consume(self, code: str) -> Optional[int]:
        """Consume one use; return what is left, or None if unknown/exhausted."""
        ...


class SupabaseDemoCodeLedger:
    """Demo code counters stored in a Supabase ``demo_codes`` table."""

    def __init__(self, supabase_client: Any) -> None:
        self.supabase = supabase_client

    async def remaining(self, code: str) -> Optional[int]:
        result = (
            self.supabase.table(DEMO_CODES_TABLE)
            .select("remaining")
            .eq("code", normalize_demo_code(code))
            .execute()
        )
        if not result.data:
            return None
        return int(result.data[0]["remaining"])

    async def consume(self, code: str) -> Optional[int]:
        normalized = normalize_demo_code(code)
        remaining = await self.remaining(normalized)
        if remaining is None or remaining < 1:
            return None

        left = remaining - 1
        self.supabase.table(DEMO_CODES_TABLE).update({"remaining": left}).eq(
            "code", normalized
        ).execute()
        return left


class InMemoryDemoCodeLedger:
    """Process-local demo code counters for development and tests."""

    def __init__(self, codes: Optional[Dict[str, int]] = None) -> None:
        self.codes: Dict[str, int] = {
            normalize_demo_code(code): uses for code, uses in (codes or {}).items()
        }

    async def remaining(self, code: str) -> Optional[int]:
        return self.codes.get(normalize_demo_code(code))

    async def consume(self, code: str) -> Optional[int]:
        normalized = normalize_demo_code(code)
        remaining = self.codes.get(normalized)
        if remaining is None or remaining < 1:
            return None
        self.codes[normalized] = remaining - 1
        return remaining - 1


@runtime_checkable
class AccessGate(Protocol):
    """Answers whether a caller may create, upload for, run or read a job."""

    async def authorize_create(
        self, admin_token: Optional[str], demo_code: Optional[str]
    ) -> JobAccess:
        ...

    async def authorize_upload(
        self, admin_token: Optional[str], demo_code: Optional[str]
    ) -> JobAccess:
        ...

    async def authorize_read(
        self, admin_token: Optional[str], demo_code: Optional[str]
    ) -> JobAccess:
        ...

    def authorize_job(
        self, access: JobAccess, admin_token: Optional[str], demo_code: Optional[str]
    ) -> None:
        ...


class DemoCodeAccessGate:
    """Admin password or demo code access, with one demo use per created job."""

    def __init__(self, admin_password: str, ledger: DemoCodeLedger) -> None:
        self.admin_password = admin_password
        self.ledger = ledger

    def is_admin(self, admin_token: Optional[str]) -> bool:
        return tokens_match(self.admin_password, admin_token)

    async def authorize_create(
        self, admin_token: Optional[str], demo_code: Optional[str]
    ) -> JobAccess:
        """
        Authorize job creation, consuming one demo use if not admin.

        Raises:
            MissingAccessCodeError: No admin token and no demo code
            InvalidAccessCodeError: Unknown or exhausted demo code
        """
        if self.is_admin(admin_token):
            logger.info("Job creation authorized as admin")
            return JobAccess(mode="admin")

        if not demo_code:
            raise MissingAccessCodeError()

        left = await self.ledger.consume(demo_code)
        if left is None:
            raise InvalidAccessCodeError()

        normalized = normalize_demo_code(demo_code)
        logger.info(f"Job creation authorized with demo code {normalized} ({left} left)")
        return JobAccess(mode="demo", code=normalized)

    async def authorize_upload(
        self, admin_token: Optional[str], demo_code: Optional[str]
    ) -> JobAccess:
        """Authorize an upload without consuming quota."""
        if self.is_admin(admin_token):
            return JobAccess(mode="admin")

        if not demo_code:
            raise MissingAccessCodeError()

        remaining = await self.ledger.remaining(demo_code)
        if remaining is None or remaining < 1:
            raise InvalidAccessCodeError()

        return JobAccess(mode="demo", code=normalize_demo_code(demo_code))

    async def authorize_read(
        self, admin_token: Optional[str], demo_code: Optional[str]
    ) -> JobAccess:
        """Authorize reading history; exhausted demo codes still qualify."""
        if self.is_admin(admin_token):
            return JobAccess(mode="admin")

        if not demo_code:
            raise MissingAccessCodeError()

        if await self.ledger.remaining(demo_code) is None:
            raise InvalidAccessCodeError()

        return JobAccess(mode="demo", code=normalize_demo_code(demo_code))

    def authorize_job(
        self, access: JobAccess, admin_token: Optional[str], demo_code: Optional[str]
    ) -> None:
        """
        Re-authorize against the access a job was created under.

        Raises:
            AccessError: Admin job without a valid admin token
            MissingAccessCodeError: Demo job without a code
            AccessDeniedError: Demo code does not match the job's code
        """
        if access.mode == "admin":
            if not self.is_admin(admin_token):
                raise AccessError("Unauthorized admin access.")
            return

        if not demo_code:
            raise MissingAccessCodeError()

        if not access.code or normalize_demo_code(demo_code) != access.code:
            raise AccessDeniedError("Invalid access code.")


def create_access_gate() -> DemoCodeAccessGate:
    """
    Create an AccessGate using application settings.

    Returns:
        Gate backed by Supabase demo codes (in-memory with the memory backend)
    """
    from studyguide.config import get_settings

    settings = get_settings()

    if settings.job_store_backend == "memory":
        return DemoCodeAccessGate(settings.admin_password, InMemoryDemoCodeLedger(settings.demo_codes))

    from supabase import create_client

    supabase_client = create_client(settings.supabase_url, settings.supabase_key)
    return DemoCodeAccessGate(settings.admin_password, SupabaseDemoCodeLedger(supabase_client))
