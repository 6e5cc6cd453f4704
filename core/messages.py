"""
core/messages.py -- Client-facing error messages, keyed by error code.

Route handlers and exception handlers never hand-write message strings.
They pass a stable machine-readable code (e.g. "email_taken") and this
module maps it to a human-readable message in the configured locale.
Unknown locales fall back to English; unknown codes fall back to the
generic internal error text so a missing entry never leaks the code alone.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

from __future__ import annotations

from core.config import get_settings

DEFAULT_LOCALE = "en"

_MESSAGES: dict[str, dict[str, str]] = {
    "en": {
        "validation_error": "Request validation failed.",
        "email_taken": "This email is already in use.",
        "bad_credentials": "Invalid email or password.",
        "no_session": "There is no active session.",
        "session_expired": "The session has expired.",
        "invalid_token": "Invalid or expired access token.",
        "user_not_found": "User not found.",
        "unknown_provider": "Unknown OAuth provider.",
        "provider_not_configured": "This OAuth provider is not configured.",
        "missing_code": "The authorization code is missing.",
        "provider_error": "The OAuth provider could not complete the sign-in.",
        "profile_incomplete": "The OAuth provider did not supply the required profile data (email and account id).",
        "rate_limited": "Too many requests.",
        "internal_error": "An unexpected error occurred.",
    },
    "el": {
        "validation_error": "Μη έγκυρα δεδομένα αιτήματος.",
        "email_taken": "Το email χρησιμοποιείται ήδη.",
        "bad_credentials": "Λάθος στοιχεία εισόδου.",
        "no_session": "Δεν υπάρχει ενεργή συνεδρία.",
        "session_expired": "Η συνεδρία έληξε.",
        "invalid_token": "Μη έγκυρο token.",
        "user_not_found": "Ο χρήστης δεν βρέθηκε.",
        "unknown_provider": "Άγνωστος πάροχος OAuth.",
        "provider_not_configured": "Ο πάροχος OAuth δεν έχει ρυθμιστεί.",
        "missing_code": "Λείπει ο κωδικός εξουσιοδότησης.",
        "provider_error": "Ο πάροχος OAuth δεν ολοκλήρωσε τη σύνδεση.",
        "profile_incomplete": "Απαιτείται email από τον πάροχο OAuth.",
        "rate_limited": "Πάρα πολλά αιτήματα.",
        "internal_error": "Παρουσιάστηκε απρόσμενο σφάλμα.",
    },
}


def message(code: str, locale: str | None = None) -> str:
    """Return the message for an error code in the given (or configured) locale."""
    catalog = _MESSAGES.get(locale or get_settings().locale, _MESSAGES[DEFAULT_LOCALE])
    return catalog.get(code) or _MESSAGES[DEFAULT_LOCALE].get(code) or _MESSAGES[DEFAULT_LOCALE]["internal_error"]


def error_detail(code: str) -> dict:
    """Build the {"code", "message"} dict used as HTTPException detail."""
    return {"code": code, "message": message(code)}
