"""Rule-Based Responses - Instant Answers for FAQ-Shaped Queries.

Answers predictable questions (return policy, shipping, greetings, ...)
without any model call:
1. Precomputed responses (substring patterns, loaded from JSON)
2. Static rules (regex patterns), scanned in descending priority order

Rules are immutable configuration built once at startup.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Pattern, Sequence, Tuple, Union

logger = logging.getLogger(__name__)

RuleResponse = Union[str, Callable[["re.Match[str]"], str]]


@dataclass(frozen=True)
class Rule:
    """An ordered list of patterns sharing one response."""

    name: str
    patterns: Tuple[Pattern[str], ...]
    response: RuleResponse
    priority: int  # Higher = checked first
    requires_auth: bool = False

    def render(self, match: "re.Match[str]") -> str:
        """Produce this rule's answer for a pattern match."""
        if callable(self.response):
            return self.response(match)
        return self.response


@dataclass(frozen=True)
class PrecomputedResponse:
    """A stored answer selected by case-insensitive substring containment."""

    pattern: str
    response: str
    priority: int = 0


@dataclass(frozen=True)
class RuleMatch:
    """Which rule answered a query, and with what."""

    rule_name: str
    response: str
    requires_auth: bool = False
    precomputed: bool = False


def _rule(
    name: str,
    patterns: Iterable[str],
    response: RuleResponse,
    priority: int,
    requires_auth: bool = False,
) -> Rule:
    return Rule(
        name=name,
        patterns=tuple(re.compile(p, re.IGNORECASE) for p in patterns),
        response=response,
        priority=priority,
        requires_auth=requires_auth,
    )


DEFAULT_RULES: Tuple[Rule, ...] = (
    _rule(
        "return_policy",
        [r"return\s+policy", r"refund\s+policy", r"how\s+to\s+return", r"can\s+i\s+return"],
        "Our return policy allows returns within 30 days of purchase. Items must be "
        "unused and in original packaging. For more details, visit your order history "
        "or contact support.",
        priority=10,
    ),
    _rule(
        "contact_support",
        [
            r"contact\s+support",
            r"customer\s+service",
            r"help\s+desk",
            r"support\s+email",
            r"how\s+to\s+contact",
        ],
        "You can contact our support team via email at support@shiningmotors.com or "
        "through the messaging system. We typically respond within 24 hours.",
        priority=10,
    ),
    _rule(
        "shipping",
        [r"shipping", r"delivery\s+time", r"how\s+long\s+to\s+ship", r"when\s+will\s+it\s+arrive"],
        "Standard shipping takes 5-7 business days. Express shipping (2-3 days) is "
        "available at checkout. You'll receive tracking information once your order ships.",
        priority=9,
    ),
    _rule(
        "order_tracking",
        [r"track\s+(my\s+)?order", r"order\s+status", r"where\s+is\s+my\s+order", r"order\s+tracking"],
        "You can track your order in the 'Orders' section of your profile. Click on any "
        "order to see detailed status and tracking information.",
        priority=9,
    ),
    _rule(
        "payment_methods",
        [r"payment\s+methods", r"how\s+to\s+pay", r"accepted\s+payments", r"what\s+payment"],
        "We accept all major credit cards, debit cards, UPI, and digital wallets. "
        "Payment is processed securely at checkout.",
        priority=8,
    ),
    _rule(
        "account_settings",
        [r"change\s+password", r"update\s+profile", r"edit\s+account", r"account\s+settings"],
        "You can update your profile and account settings by going to your profile page "
        "and clicking the 'Settings' button.",
        priority=8,
    ),
    _rule(
        "services",
        [r"what\s+services", r"available\s+services", r"service\s+types", r"book\s+service"],
        "We offer various automotive services including car wash, AC service, general "
        "maintenance, and more. Browse the Services section to see all available "
        "services and book an appointment.",
        priority=7,
    ),
    _rule(
        "events",
        [r"upcoming\s+events", r"what\s+events", r"event\s+calendar", r"when\s+is\s+the\s+next"],
        "Check out our Events page to see all upcoming automotive events, races, and "
        "meetups. You can filter by category and location.",
        priority=7,
    ),
    _rule(
        "products",
        [r"what\s+products", r"available\s+products", r"product\s+categories"],
        "We have a wide range of automotive products including OEM parts, accessories, "
        "tools, and more. Browse the Shop section to explore our catalog.",
        priority=6,
    ),
    _rule(
        "vendor_registration",
        [
            r"become\s+a\s+vendor",
            r"vendor\s+registration",
            r"how\s+to\s+sell",
            r"register\s+as\s+vendor",
        ],
        "To become a vendor, please visit the vendor registration page or contact our "
        "vendor support team. We'll guide you through the registration process.",
        priority=6,
    ),
    _rule(
        "sim_racing",
        [r"sim\s+racing", r"simulator", r"racing\s+leagues", r"sim\s+events"],
        "Explore our Sim Racing section for virtual racing events, leagues, garages, and "
        "equipment. Join competitions and connect with other racing enthusiasts!",
        priority=5,
    ),
    _rule(
        "greeting",
        [r"^(hi|hello|hey)[!.]?$"],
        "Hello! I'm your Shining Motors AI assistant. How can I help you today? I can "
        "help you find products, answer questions about services, or assist with orders.",
        priority=4,
    ),
    _rule(
        "thanks",
        [r"thank\s+you|thanks|appreciate"],
        "You're welcome! Is there anything else I can help you with?",
        priority=3,
    ),
    _rule(
        "goodbye",
        [r"\bbye\b|goodbye|see\s+you|farewell"],
        "Goodbye! Feel free to come back anytime if you need assistance. Have a great day!",
        priority=2,
    ),
)

# Keywords that suggest a query is FAQ-shaped
FAQ_KEYWORDS: Tuple[str, ...] = (
    "policy",
    "return",
    "refund",
    "contact",
    "support",
    "shipping",
    "delivery",
    "payment",
    "account",
    "profile",
    "password",
    "hi",
    "hello",
    "thanks",
    "bye",
)


def load_precomputed_responses(path: Path) -> List[PrecomputedResponse]:
    """Load precomputed responses from a JSON list.

    Each item needs ``pattern`` and ``response``; ``priority`` defaults to 0 and
    items with ``"is_active": false`` are skipped.
    """
    with open(path, encoding="utf-8") as f:
        raw = json.load(f)

    entries = []
    for item in raw:
        if not item.get("is_active", True):
            continue
        pattern = (item.get("pattern") or "").strip()
        if not pattern or not item.get("response"):
            logger.warning(f"Skipping precomputed response without pattern/response: {item!r}")
            continue
        entries.append(
            PrecomputedResponse(
                pattern=pattern,
                response=item["response"],
                priority=int(item.get("priority", 0)),
            )
        )
    logger.info(f"Loaded {len(entries)} precomputed responses from {path}")
    return entries


class RuleEngine:
    """Pattern-based answers with zero cost and zero latency.

    Rules are scanned in descending priority order; ties keep the order in
    which they were configured. The first matching pattern wins.
    """

    def __init__(
        self,
        rules: Optional[Sequence[Rule]] = None,
        precomputed: Optional[Sequence[PrecomputedResponse]] = None,
        likely_max_length: int = 20,
    ):
        # sorted() is stable, so equal priorities keep configuration order
        self._rules: Tuple[Rule, ...] = tuple(
            sorted(DEFAULT_RULES if rules is None else rules, key=lambda r: -r.priority)
        )
        self._precomputed: Tuple[PrecomputedResponse, ...] = tuple(
            sorted(precomputed or (), key=lambda p: -p.priority)
        )
        self._likely_max_length = likely_max_length

    @classmethod
    def from_settings(cls, settings) -> "RuleEngine":
        """Build from a ``RuleSettings`` section."""
        precomputed = None
        if settings.precomputed_file is not None:
            precomputed = load_precomputed_responses(settings.precomputed_file)
        return cls(precomputed=precomputed, likely_max_length=settings.likely_max_length)

    def find(self, query: str) -> Optional[RuleMatch]:
        """Find the rule (or precomputed response) answering a query."""
        text = query.strip()
        lowered = text.lower()

        for entry in self._precomputed:
            if entry.pattern.lower() in lowered:
                return RuleMatch(
                    rule_name=f"precomputed:{entry.pattern}",
                    response=entry.response,
                    precomputed=True,
                )

        for rule in self._rules:
            for pattern in rule.patterns:
                match = pattern.search(text)
                if match:
                    logger.debug(f"Rule {rule.name} matched query")
                    return RuleMatch(
                        rule_name=rule.name,
                        response=rule.render(match),
                        requires_auth=rule.requires_auth,
                    )
        return None

    def match(self, query: str) -> Optional[str]:
        """Return the rule-based answer for a query, or None."""
        found = self.find(query)
        return found.response if found else None

    def is_likely_rule_based(self, query: str) -> bool:
        """Cheap advisory pre-check: very short or FAQ-keyword queries.

        A negative here can still match a rule; never use it as the only gate.
        """
        lowered = query.lower().strip()
        if len(lowered) < self._likely_max_length:
            return True
        return any(keyword in lowered for keyword in FAQ_KEYWORDS)

    def all_rules(self) -> List[Rule]:
        """Configured rules in evaluation order (for admin/debugging)."""
        return list(self._rules)

    @property
    def precomputed_count(self) -> int:
        return len(self._precomputed)
