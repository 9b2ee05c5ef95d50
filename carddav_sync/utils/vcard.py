"""
vCard helpers for the few properties sync needs to read or write.

Only the UID and FN lines are touched; the rest of the vCard text is
passed through byte-for-byte.
"""

from __future__ import annotations

import re
import uuid

UID_PATTERN = re.compile(r"^UID:(.+?)\s*$", re.MULTILINE | re.IGNORECASE)
FN_PATTERN = re.compile(r"^FN(?:;[^:]*)?:(.+?)\s*$", re.MULTILINE | re.IGNORECASE)
END_VCARD_PATTERN = re.compile(r"END:VCARD", re.IGNORECASE)


def extract_uid(vcard_text: str | None) -> str | None:
    """
    Extract the UID property value from vCard text.

    Args:
        vcard_text: Raw vCard text (may be None or empty)

    Returns:
        The UID value, or None when the vCard has no usable UID line
    """
    if not vcard_text:
        return None

    match = UID_PATTERN.search(vcard_text)
    if not match:
        return None

    uid = match.group(1).strip()
    return uid or None


def extract_display_name(vcard_text: str | None) -> str:
    """Extract the FN property value, or an empty string."""
    if not vcard_text:
        return ""

    match = FN_PATTERN.search(vcard_text)
    return match.group(1).strip() if match else ""


def with_uid(vcard_text: str, uid: str) -> str:
    """
    Return the vCard text with a UID line inserted before END:VCARD.

    Args:
        vcard_text: vCard text without a UID line
        uid: UID value to insert

    Returns:
        New vCard text containing the UID

    Raises:
        ValueError: If the text has no END:VCARD line
    """
    if not END_VCARD_PATTERN.search(vcard_text):
        raise ValueError("Invalid vCard: missing END:VCARD")

    return END_VCARD_PATTERN.sub(f"UID:{uid}\nEND:VCARD", vcard_text, count=1)


def generate_uid() -> str:
    """Generate a new globally unique contact UID."""
    return f"urn:uuid:{uuid.uuid4()}"
