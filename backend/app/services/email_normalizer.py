"""
Email normalization and disposable-domain blocking for lead capture.

The normalized address is the dedup key for email_leads, so every write path
must go through normalize_email() first.

Provider rules
--------------
All addresses are lower-cased (local part and domain). Gmail's legacy
googlemail.com domain is folded onto gmail.com. Dots and "+tag" sub-addresses
are deliberately preserved for every provider: two addresses that differ only
by a sub-address are treated as two leads.
"""

from typing import Optional


# Domains that deliver to the same mailbox as the canonical domain
_PROVIDER_DOMAIN_ALIASES = {
    "googlemail.com": "gmail.com",
}

DISPOSABLE_DOMAINS = frozenset({
    "10minutemail.com",
    "guerrillamail.com",
    "mailinator.com",
    "temp-mail.org",
    "throwaway.email",
    "yopmail.com",
})


def normalize_email(email: str) -> Optional[str]:
    """
    Return the canonical form of an email address, or None if it has no
    usable local part / domain.

    Examples:
        "John.Doe@GMAIL.com"        -> "john.doe@gmail.com"
        "someone@googlemail.com"    -> "someone@gmail.com"
        "Alice+news@Outlook.com"    -> "alice+news@outlook.com"
    """
    if not email:
        return None

    local, sep, domain = email.strip().rpartition("@")
    if not sep or not local or not domain:
        return None

    local = local.lower()
    domain = domain.lower()
    domain = _PROVIDER_DOMAIN_ALIASES.get(domain, domain)
    return f"{local}@{domain}"


def email_domain(email: str) -> str:
    """Return the lower-cased domain part of an address ("" if absent)."""
    _, sep, domain = email.rpartition("@")
    return domain.lower() if sep else ""


def is_blocked_domain(email: str) -> bool:
    """True when the address has no domain or uses a disposable-email provider."""
    domain = email_domain(email)
    if not domain:
        return True
    return domain in DISPOSABLE_DOMAINS
