"""
Rule store and rule predicates.

Rules live in the ``match_rules`` table and are handed to the matcher as
an immutable, versioned ``RuleSet`` snapshot so a pass never observes a
rule edit half way through.
"""
import re
from decimal import Decimal
from pathlib import Path
from typing import List, Optional

import yaml

from .config import MatchingConfig, config
from .exceptions import ConfigurationError, RecordNotFoundError, ValidationError
from .logging_config import get_logger
from .models import (
    Channel, ConfidenceTier, ExpectedEvent, MatchRule, RuleKind, RuleSet, Transaction,
)
from .storage import ReconStore

logger = get_logger("rules")


DEFAULT_RULES = [
    MatchRule(
        id="rule-exact-amount-date",
        name="Exact Amount and Date",
        priority=10,
        kind=RuleKind.EXACT_AMOUNT_DATE,
        confidence=ConfidenceTier.HIGH,
        description="Amount and date agree to the cent and the day",
    ),
    MatchRule(
        id="rule-mpesa-receipt",
        name="M-PESA Receipt",
        priority=20,
        kind=RuleKind.CHANNEL_RECEIPT_ID,
        amount_tolerance=Decimal("5"),
        date_window_days=1,
        confidence=ConfidenceTier.HIGH,
        channel=Channel.MOBILE_MONEY,
        description="Mobile-money receipt number appears in the statement reference",
    ),
    MatchRule(
        id="rule-bank-reference",
        name="Bank Reference",
        priority=30,
        kind=RuleKind.REFERENCE_PATTERN,
        amount_tolerance=Decimal("10"),
        date_window_days=2,
        confidence=ConfidenceTier.MEDIUM,
        reference_pattern=r"\b(INV-?\d+|RENT-?\d+|[A-Z]{2,5}-\d{2,})\b",
        description="Invoice or lease reference quoted in the narrative",
    ),
    MatchRule(
        id="rule-amount-date-tolerance",
        name="Amount with Date Tolerance",
        priority=50,
        kind=RuleKind.FUZZY_TOLERANT,
        amount_tolerance=Decimal("5"),
        date_window_days=3,
        confidence=ConfidenceTier.LOW,
        description="Amount close and date within a few days",
    ),
]


def effective_tolerance(rule: MatchRule, transaction: Transaction, matching: MatchingConfig) -> Decimal:
    """Amount tolerance a rule may apply, capped at the deployment's partial tolerance."""
    if rule.kind == RuleKind.EXACT_AMOUNT_DATE:
        return Decimal("0")
    amount = transaction.absolute_amount
    return min(rule.tolerance_for(amount), matching.partial_tolerance_for(amount))


def amount_variance(transaction: Transaction, event: ExpectedEvent) -> Decimal:
    """Statement amount minus expected amount, both taken as magnitudes."""
    return transaction.absolute_amount - abs(event.expected_amount)


def rule_matches(
    rule: MatchRule,
    transaction: Transaction,
    event: ExpectedEvent,
    matching: Optional[MatchingConfig] = None
) -> bool:
    """Return True if ``event`` satisfies ``rule`` for ``transaction``."""
    matching = matching or config.matching

    if rule.channel is not None and rule.channel != transaction.channel:
        return False
    if rule.entity_type and rule.entity_type != event.entity_type:
        return False

    variance = amount_variance(transaction, event)
    if abs(variance) > effective_tolerance(rule, transaction, matching):
        return False

    day_gap = abs((transaction.transaction_date - event.expected_date).days)
    if rule.kind == RuleKind.EXACT_AMOUNT_DATE:
        return day_gap == 0
    if day_gap > rule.date_window_days:
        return False

    if rule.kind == RuleKind.CHANNEL_RECEIPT_ID:
        return _receipt_matches(transaction, event)
    if rule.kind == RuleKind.REFERENCE_PATTERN:
        return _reference_matches(rule, transaction, event)
    return True


def _receipt_matches(transaction: Transaction, event: ExpectedEvent) -> bool:
    if not event.receipt_id or not transaction.reference:
        return False
    receipt = event.receipt_id.strip().upper()
    reference = transaction.reference.strip().upper()
    return bool(receipt) and (receipt == reference or receipt in reference)


def _reference_matches(rule: MatchRule, transaction: Transaction, event: ExpectedEvent) -> bool:
    text = transaction.search_text().upper()
    event_reference = (event.reference or "").strip().upper()

    if rule.description_keywords and not _contains_any(transaction.description, rule.description_keywords):
        return False
    payer_text = f"{transaction.counterparty or ''} {transaction.description or ''}"
    if rule.payer_keywords and not _contains_any(payer_text, rule.payer_keywords):
        return False

    if rule.reference_pattern:
        found = re.search(rule.reference_pattern, transaction.search_text(), re.IGNORECASE)
        if not found:
            return False
        if found.groups() and found.group(1):
            token = _compact(found.group(1))
            keys = {_compact(event_reference), _compact(event.entity_id or "")}
            if token in keys - {""}:
                return True

    if event_reference and event_reference in text:
        return True
    # Keyword rules without a pattern tie on amount and date alone
    return not rule.reference_pattern and bool(rule.description_keywords or rule.payer_keywords)


def _contains_any(text: Optional[str], keywords: List[str]) -> bool:
    haystack = (text or "").lower()
    return any(k.strip().lower() in haystack for k in keywords if k.strip())


def _keywords(value) -> List[str]:
    """Keyword list from YAML, given as a list or a comma separated string."""
    if not value:
        return []
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, list):
        raise ValidationError("keywords", str(value), "must be a list or a comma separated string")
    return [str(k).strip() for k in value if str(k).strip()]


def _compact(value: str) -> str:
    """Upper-case and drop separators so 'INV-77' and 'inv77' compare equal."""
    return re.sub(r"[^A-Z0-9]", "", value.upper())


class RuleStore:
    """Persistent, prioritized match rules."""

    def __init__(self, store: ReconStore):
        self.store = store

    def active_rules(self) -> List[MatchRule]:
        """Active rules sorted by ``(priority, id)``."""
        return self.store.list_rules(active_only=True)

    def all_rules(self) -> List[MatchRule]:
        return self.store.list_rules()

    def snapshot(self) -> RuleSet:
        """Immutable, versioned copy of the active rules."""
        return RuleSet.from_rules(self.active_rules())

    def upsert(self, rule: MatchRule) -> MatchRule:
        self._validate(rule)
        self.store.upsert_rule(rule)
        logger.info(f"Saved rule {rule.id} ({rule.kind.value}, priority {rule.priority})")
        return rule

    def set_active(self, rule_id: str, is_active: bool) -> MatchRule:
        if not self.store.set_rule_active(rule_id, is_active):
            raise RecordNotFoundError("match_rules", rule_id)
        logger.info(f"Rule {rule_id} {'activated' if is_active else 'deactivated'}")
        return self.store.get_rule(rule_id)

    def seed_defaults(self) -> List[MatchRule]:
        """Install the default rules, leaving rules that already exist untouched."""
        seeded = []
        for rule in DEFAULT_RULES:
            if self.store.get_rule(rule.id) is None:
                self.store.upsert_rule(rule)
                seeded.append(rule)
        if seeded:
            logger.info(f"Seeded {len(seeded)} default match rules")
        return seeded

    def load_yaml(self, path: Path) -> List[MatchRule]:
        """
        Load rule definitions from a YAML file and upsert them by id.

        The file holds either a list of rules or a mapping with a ``rules`` key.
        """
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Rules file not found: {path}", setting="RULES_FILE")

        with open(path, "r", encoding="utf-8") as f:
            document = yaml.safe_load(f) or []

        entries = document.get("rules", []) if isinstance(document, dict) else document
        if not isinstance(entries, list):
            raise ConfigurationError(f"Rules file {path} must contain a list of rules", setting="RULES_FILE")

        rules = [self._rule_from_dict(entry) for entry in entries]
        for rule in rules:
            self.upsert(rule)
        logger.info(f"Loaded {len(rules)} rules from {path}")
        return rules

    @staticmethod
    def _rule_from_dict(data: dict) -> MatchRule:
        if "id" not in data or "kind" not in data:
            raise ValidationError("rule", str(data), "each rule needs an id and a kind")
        try:
            kind = RuleKind(str(data["kind"]).upper())
            confidence = ConfidenceTier(str(data["confidence"]).upper()) if data.get("confidence") else None
            channel = Channel(str(data["channel"]).upper()) if data.get("channel") else None
        except ValueError as e:
            raise ValidationError("rule", str(data.get("id")), str(e))

        return MatchRule(
            id=str(data["id"]),
            name=data.get("name", str(data["id"])),
            priority=int(data.get("priority", 100)),
            kind=kind,
            amount_tolerance=Decimal(str(data.get("amount_tolerance", "0"))),
            amount_tolerance_percent=Decimal(str(data.get("amount_tolerance_percent", "0"))),
            date_window_days=int(data.get("date_window_days", 0)),
            confidence=confidence,
            reference_pattern=data.get("reference_pattern"),
            description_keywords=_keywords(data.get("description_keywords")),
            payer_keywords=_keywords(data.get("payer_keywords")),
            entity_type=data.get("entity_type"),
            channel=channel,
            description=data.get("description", ""),
            is_active=bool(data.get("is_active", True)),
        )

    @staticmethod
    def _validate(rule: MatchRule):
        if rule.amount_tolerance < 0 or rule.amount_tolerance_percent < 0:
            raise ValidationError("amount_tolerance", str(rule.amount_tolerance), "must not be negative")
        if rule.date_window_days < 0:
            raise ValidationError("date_window_days", str(rule.date_window_days), "must not be negative")
        if rule.kind == RuleKind.REFERENCE_PATTERN and rule.reference_pattern:
            try:
                re.compile(rule.reference_pattern)
            except re.error as e:
                raise ValidationError("reference_pattern", rule.reference_pattern, f"invalid regex: {e}")
