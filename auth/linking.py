"""
auth/linking.py -- Resolve the local User for a completed OAuth profile.

Resolution order:
  1. An OAuthAccount already exists for (provider, provider_account_id)
     -- reuse its linked user.
  2. A User already exists with the profile's email -- attach this
     provider identity to that account.
  3. Otherwise create a new User with no password (OAuth-only).

The OAuthAccount row for the pair is then created or overwritten with the
latest provider access token and the resolved owner.

Because step 1 always wins, a provider-side email change does not move an
existing link to a different local user: the link keeps pointing at the
user it was created for.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from auth.models import OAuthAccount, User
from auth.oauth import OAuthProfile
from auth.store import UserStore

logger = logging.getLogger("authgate.auth.linking")


def resolve_user(store: UserStore, provider: str, profile: OAuthProfile) -> User:
    """Find or create the local user for a complete provider profile."""
    account = store.get_oauth_account(provider, profile.provider_account_id)
    if account is not None:
        user = store.get_by_id(account.user_id)
        if user is not None:
            return user

    user = store.get_by_email(profile.email)
    if user is not None:
        logger.info("Linking %s identity to existing user_id=%s", provider, user.id)
        return user

    try:
        user_id = store.create_user(User(email=profile.email, name=profile.name))
    except IntegrityError:
        # A concurrent request created the same email first.
        user = store.get_by_email(profile.email)
        if user is None:
            raise
        return user
    logger.info("Created OAuth-only user_id=%s via %s", user_id, provider)
    return store.get_by_id(user_id)


def link_oauth_identity(store: UserStore, provider: str, profile: OAuthProfile, access_token: str) -> User:
    """Resolve the user for a profile and upsert the provider link. Returns the user."""
    user = resolve_user(store, provider, profile)
    store.upsert_oauth_account(
        OAuthAccount(
            provider=provider,
            provider_account_id=profile.provider_account_id,
            access_token=access_token,
            user_id=user.id,
        )
    )
    return user
