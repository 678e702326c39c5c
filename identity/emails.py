"""Email address canonicalization and display masking."""


def normalize_email(value: str | None) -> str:
    """Canonical form used for uniqueness and lookups: trimmed, lowercased."""
    if value is None:
        return ""
    return value.strip().lower()


def mask_email_address(email: str | None) -> str:
    """
    Partially redact an address for display, e.g. "ti***@example.com".

    Keeps two characters of the local part (one when the local part is two
    characters or shorter). Presentation only; not a security control.
    """
    fallback = "your email address"
    if not email or not email.strip():
        return fallback

    value = email.strip()
    at_index = value.find("@")
    if at_index <= 1 or at_index == len(value) - 1:
        return fallback

    local_part = value[:at_index]
    domain = value[at_index + 1:]
    visible = 1 if len(local_part) <= 2 else 2
    return f"{local_part[:visible]}***@{domain}"
