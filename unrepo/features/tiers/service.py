"""
Tier classification.

Pure: reads only the flags already loaded for the current request. Called on
every enforcement so asynchronous upgrades (payment, token threshold) take
effect on the next request without any cache to invalidate.
"""

from typing import Union

from unrepo.models.account import Account
from unrepo.models.principal import AuthenticatedPrincipal, Tier
from unrepo.models.wallet import Wallet


def classify(subject: Union[Account, Wallet]) -> Tier:
    if isinstance(subject, Account):
        return Tier.PREMIUM if (subject.payment_verified or subject.is_token_holder) else Tier.FREE
    if isinstance(subject, Wallet):
        return Tier.PREMIUM if subject.is_token_holder else Tier.FREE
    raise TypeError(f"cannot classify {type(subject).__name__}")


def classify_principal(principal: AuthenticatedPrincipal) -> Tier:
    subject = principal.account if principal.account is not None else principal.wallet
    if subject is None:
        raise ValueError("principal carries neither an account nor a wallet")
    return classify(subject)
