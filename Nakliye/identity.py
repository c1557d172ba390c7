from .models import BrokerProfile, CarrierProfile

CARRIER_CACHE_ATTR = "_carrier_profile_cache"
BROKER_CACHE_ATTR = "_broker_profile_cache"


def get_carrier_for_user(user):
    if not user or not getattr(user, "is_authenticated", False):
        return None
    if hasattr(user, CARRIER_CACHE_ATTR):
        return getattr(user, CARRIER_CACHE_ATTR)
    carrier = CarrierProfile.objects.filter(user_id=user.id).first()
    setattr(user, CARRIER_CACHE_ATTR, carrier)
    return carrier


def get_broker_for_user(user):
    if not user or not getattr(user, "is_authenticated", False):
        return None
    if hasattr(user, BROKER_CACHE_ATTR):
        return getattr(user, BROKER_CACHE_ATTR)
    broker = BrokerProfile.objects.filter(user_id=user.id).first()
    setattr(user, BROKER_CACHE_ATTR, broker)
    return broker


def get_carrier_registered_city(carrier):
    if carrier is None:
        return ""
    if isinstance(carrier, CarrierProfile):
        return carrier.city or ""
    return CarrierProfile.objects.filter(id=carrier).values_list("city", flat=True).first() or ""
