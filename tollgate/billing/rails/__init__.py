from tollgate.billing.constants import PaymentRailName
from tollgate.billing.exceptions import ProviderMisconfigured
from tollgate.billing.rails.base import PaymentRail


def get_rail(name: str) -> PaymentRail:
    """Instantiate the rail registered under ``name``."""
    from tollgate.billing.rails.card import StripeRail
    from tollgate.billing.rails.crypto import CryptomusRail

    rails = {
        PaymentRailName.STRIPE: StripeRail,
        PaymentRailName.CRYPTOMUS: CryptomusRail,
    }
    rail_class = rails.get(name)
    if rail_class is None:
        msg = f"Unknown payment rail: {name}"
        raise ProviderMisconfigured(msg)
    return rail_class()
