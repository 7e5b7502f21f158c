"""Catalog service — read accessors over stores, products and owners.

Store and product CRUD live elsewhere; checkout and settlement only
need these lookups. Each returns the row or None.
"""

from popstore.models.store import Product, Store
from popstore.models.user import User


def find_product(session, product_id):
    if not product_id:
        return None
    return session.get(Product, product_id)


def find_store(session, store_id):
    if not store_id:
        return None
    return session.get(Store, store_id)


def find_owner(session, user_id):
    if not user_id:
        return None
    return session.get(User, user_id)


def is_payout_ready(owner):
    """True if the owner can receive destination-charge transfers.

    Requires a connected Stripe account that finished onboarding
    (kept in sync by the account.updated webhook).
    """
    return bool(
        owner is not None
        and owner.stripe_account_id
        and owner.stripe_onboarding_complete
    )
