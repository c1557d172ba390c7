"""Eligibility rules gating the conversion of an offer into a binding job.

Every rule is a predicate over an ``EligibilityContext``; a checker ANDs its
rules and raises the typed error of the first one that fails. The city rule
is always present; deployments can append rules through the
``ELIGIBILITY_EXTRA_RULES`` setting (dotted paths to ``EligibilityRule``
instances or factories) without touching the offer flow.
"""

import logging
import re
import unicodedata
from dataclasses import dataclass, field

from django.conf import settings
from django.utils.module_loading import import_string

from .errors import CityMismatch, LifecycleError

logger = logging.getLogger(__name__)

# Turkish dotted/dotless i must fold before NFKD, otherwise "İ" leaves a
# combining dot behind and "ı" survives as a non-ascii letter.
TURKISH_FOLD_MAP = str.maketrans({"İ": "i", "I": "i", "ı": "i"})
WHITESPACE_RE = re.compile(r"\s+")


def normalize_city(value):
    text = str(value or "").translate(TURKISH_FOLD_MAP).casefold()
    text = unicodedata.normalize("NFKD", text)
    text = "".join(char for char in text if not unicodedata.combining(char))
    return WHITESPACE_RE.sub(" ", text).strip()


def city_matches(pickup_city, carrier_registered_city):
    pickup = normalize_city(pickup_city)
    registered = normalize_city(carrier_registered_city)
    if not pickup or not registered:
        return False
    return pickup == registered


@dataclass
class EligibilityContext:
    pickup_city: str
    carrier_city: str
    carrier: object = None
    offer: object = None
    extra: dict = field(default_factory=dict)


@dataclass
class EligibilityRule:
    name: str
    predicate: object
    error_class: type = LifecycleError
    message: str = ""

    def failure(self, context):
        return self.error_class(self.message or None)


class CityMatchRule(EligibilityRule):
    def __init__(self):
        super().__init__(
            name="city-match",
            predicate=lambda context: city_matches(context.pickup_city, context.carrier_city),
            error_class=CityMismatch,
        )

    def failure(self, context):
        return CityMismatch(
            f"Bu iş {context.pickup_city} çıkışlı; kayıtlı şehriniz {context.carrier_city or '-'}.",
            required_city=context.pickup_city,
            registered_city=context.carrier_city,
        )


class EligibilityChecker:
    def __init__(self, rules=None):
        self.rules = list(rules) if rules is not None else [CityMatchRule()]

    def add_rule(self, rule):
        self.rules.append(rule)
        return self

    def failing_rule(self, context):
        for rule in self.rules:
            if not rule.predicate(context):
                return rule
        return None

    def is_eligible(self, context):
        return self.failing_rule(context) is None

    def check(self, context):
        rule = self.failing_rule(context)
        if rule is None:
            return
        logger.info(
            "Eligibility rule %s failed (pickup=%r, carrier_city=%r)",
            rule.name,
            context.pickup_city,
            context.carrier_city,
        )
        raise rule.failure(context)


def load_extra_rules():
    rules = []
    for dotted_path in getattr(settings, "ELIGIBILITY_EXTRA_RULES", []) or []:
        loaded = import_string(dotted_path)
        rules.append(loaded if isinstance(loaded, EligibilityRule) else loaded())
    return rules


def get_eligibility_checker():
    return EligibilityChecker([CityMatchRule(), *load_extra_rules()])
