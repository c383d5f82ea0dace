"""
Human-readable document numbers: {prefix}-{timestamp}-{random}.

Numbers are cosmetic; uniqueness within a tenant is backed by a unique
constraint on (organization_id, number).
"""
import time
import uuid


def generate_number(prefix: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9].upper()}"
