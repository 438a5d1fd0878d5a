"""
Rule-driven matching of statement lines to expected events.

For each unmatched transaction, oldest first:
1. Query the feed for expected events around the transaction date
2. Drop events that are settled, already matched, claimed earlier in
   this pass, or flow in the other direction
3. Walk the rules in priority order; the first rule with exactly one
   candidate wins
4. Rules with several candidates are skipped and their candidates are
   kept as scored suggestions for a human
"""
import re
import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Set, Tuple

from rapidfuzz import fuzz
import jellyfish

from .config import MatchingConfig, config
from .exceptions import (
    DuplicateMatchError, EventAlreadySettledError, InvalidStatusTransitionError,
    MatchingPassInProgressError, RecordNotFoundError,
)
from .feeds import ExpectedEventsFeed
from .ledger import MatchLedger
from .logging_config import (
    get_logger, log_matching_pass_complete, log_matching_pass_start,
)
from .models import (
    SYSTEM_ACTOR, CancellationToken, DateWindow, ExpectedEvent, Match, MatchRule,
    MatchSuggestion, MatchingPassResult, RuleSet, Transaction, TransactionStatus, utc_now,
)
from .notifier import MatchNotifier
from .rules import RuleStore, amount_variance, rule_matches
from .storage import ReconStore

logger = get_logger("matching_engine")


@dataclass
class MatchCandidate:
    """A potential match between a transaction and an expected event."""
    event: ExpectedEvent
    variance: Decimal = Decimal("0")
    score: float = 0.0
    score_breakdown: Dict[str, float] = field(default_factory=dict)
    match_reasons: List[str] = field(default_factory=list)
    rule: Optional[MatchRule] = None


class MatchingEngine:
    """
    Matching engine for statement reconciliation.

    At most one pass runs per account at a time; the lock lives in the
    ``matching_locks`` table so it also holds across processes.
    """

    def __init__(
        self,
        store: ReconStore,
        feed: ExpectedEventsFeed,
        rule_store: Optional[RuleStore] = None,
        ledger: Optional[MatchLedger] = None,
        notifier: Optional[MatchNotifier] = None,
        cfg: Optional[MatchingConfig] = None
    ):
        self.store = store
        self.feed = feed
        self.rule_store = rule_store or RuleStore(store)
        self.ledger = ledger or MatchLedger(store)
        self.notifier = notifier or MatchNotifier(store, feed)
        self.config = cfg or config.matching
        self._name_cache: Dict[str, str] = {}

    def run_matching_pass(
        self,
        account_id: str,
        rule_set: Optional[RuleSet] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> MatchingPassResult:
        """
        Match every UNMATCHED transaction of an account.

        Raises:
            RecordNotFoundError: unknown account
            MatchingPassInProgressError: another pass holds the account lock
        """
        if self.store.get_account(account_id) is None:
            raise RecordNotFoundError("accounts", account_id)

        owner = str(uuid.uuid4())
        if not self.store.acquire_lock(account_id, owner, self.config.lock_ttl_seconds):
            raise MatchingPassInProgressError(account_id)

        start = time.time()
        try:
            rule_set = rule_set if rule_set is not None else self.rule_store.snapshot()
            result = MatchingPassResult(account_id=account_id, rule_set_version=rule_set.version)

            pending = self.store.list_transactions(account_id, status=TransactionStatus.UNMATCHED)
            log_matching_pass_start(logger, account_id, len(pending), rule_set.version)

            claimed: Set[str] = set()
            for transaction in pending:
                if cancel_token is not None and cancel_token.cancelled:
                    result.cancelled = True
                    break
                self._match_transaction(transaction, rule_set, claimed, result)
        finally:
            self.store.release_lock(account_id, owner)

        result.completed_at = utc_now()
        log_matching_pass_complete(
            logger, account_id,
            matched=result.matched_count,
            ambiguous=result.ambiguous_count,
            unmatched=result.unmatched_count,
            cancelled=result.cancelled,
            duration_seconds=time.time() - start
        )
        return result

    def find_candidates(self, transaction: Transaction, claimed: Optional[Set[str]] = None) -> List[ExpectedEvent]:
        """Eligible expected events for a transaction, ordered by ``(expected_date, id)``."""
        window = DateWindow.around(
            transaction.transaction_date, self.config.lookback_days, self.config.lookahead_days
        )
        events = self.feed.query(transaction.account_id, window)
        active_ids = self.store.actively_matched_event_ids(e.id for e in events)
        claimed = claimed or set()

        eligible = [
            e for e in events
            if self._is_eligible(e, transaction, active_ids, claimed)
        ]
        return sorted(eligible, key=lambda e: (e.expected_date, e.id))

    def _is_eligible(
        self,
        event: ExpectedEvent,
        transaction: Transaction,
        active_ids: Set[str],
        claimed: Set[str]
    ) -> bool:
        if event.fully_matched:
            return False
        if event.direction is not None and event.direction != transaction.direction:
            return False
        if event.allows_partial_settlements:
            return True
        return event.id not in active_ids and event.id not in claimed

    def _match_transaction(
        self,
        transaction: Transaction,
        rule_set: RuleSet,
        claimed: Set[str],
        result: MatchingPassResult
    ):
        candidates = self.find_candidates(transaction, claimed)

        ambiguous: Dict[str, MatchCandidate] = {}
        for rule in rule_set:
            hits = [e for e in candidates if rule_matches(rule, transaction, e, self.config)]
            if len(hits) == 1:
                self._commit(transaction, self._score(transaction, hits[0], rule), rule_set, claimed, result)
                return
            for event in hits:
                if event.id not in ambiguous:
                    ambiguous[event.id] = self._score(transaction, event, rule)

        if ambiguous:
            self._record_suggestions(transaction, list(ambiguous.values()))
            result.ambiguous_count += 1
        else:
            result.unmatched_count += 1

    def _commit(
        self,
        transaction: Transaction,
        candidate: MatchCandidate,
        rule_set: RuleSet,
        claimed: Set[str],
        result: MatchingPassResult
    ):
        event = candidate.event
        rule = candidate.rule
        match = Match(
            transaction_id=transaction.id,
            event_id=event.id,
            confidence=rule.confidence,
            rule_id=rule.id,
            rule_set_version=rule_set.version,
            actor=SYSTEM_ACTOR,
            score=candidate.score,
            matched_amount=transaction.absolute_amount,
            variance=candidate.variance,
            event_entity_type=event.entity_type,
            event_entity_id=event.entity_id,
            event_amount=event.expected_amount,
            event_date=event.expected_date,
            event_allows_partial=event.allows_partial_settlements,
        )

        try:
            with self.store.transaction() as conn:
                self.ledger.record_match(conn, transaction, match, SYSTEM_ACTOR, reason=f"rule: {rule.name}")
                self.store.replace_suggestions(transaction.id, [], conn)
        except (InvalidStatusTransitionError, DuplicateMatchError, EventAlreadySettledError) as e:
            # A human acted on this line (or event) while the pass was running
            logger.info(f"Skipped txn {transaction.id}: {e.message}")
            result.skipped_count += 1
            return

        if not event.allows_partial_settlements:
            claimed.add(event.id)
        result.matched_count += 1
        if match.variance != 0:
            result.partially_matched_count += 1

        if not self.notifier.notify(match):
            result.notification_failures += 1

    def _record_suggestions(self, transaction: Transaction, candidates: List[MatchCandidate]):
        ranked = sorted(candidates, key=lambda c: (-c.score, c.event.expected_date, c.event.id))
        suggestions = [
            MatchSuggestion(
                transaction_id=transaction.id,
                event_id=c.event.id,
                rule_id=c.rule.id if c.rule else None,
                score=c.score,
                reasons=c.match_reasons,
            )
            for c in ranked[:self.config.max_suggestions]
        ]
        self.store.replace_suggestions(transaction.id, suggestions)
        logger.debug(f"Txn {transaction.id} is ambiguous between {len(candidates)} events")

    def _score(self, transaction: Transaction, event: ExpectedEvent, rule: Optional[MatchRule] = None) -> MatchCandidate:
        score, breakdown, reasons = self._calculate_match_score(transaction, event)
        return MatchCandidate(
            event=event,
            variance=amount_variance(transaction, event),
            score=score,
            score_breakdown=breakdown,
            match_reasons=reasons,
            rule=rule,
        )

    def _calculate_match_score(
        self,
        transaction: Transaction,
        event: ExpectedEvent
    ) -> Tuple[float, Dict[str, float], List[str]]:
        """Weighted 0..1 similarity between a transaction and an expected event."""
        scores = {}
        reasons = []

        # Amount score (most important)
        expected = abs(event.expected_amount)
        amount_diff = abs(amount_variance(transaction, event))
        if amount_diff == 0:
            scores["amount"] = 1.0
            reasons.append("Exact amount match")
        elif expected:
            scores["amount"] = max(0.0, 1.0 - float(amount_diff / expected) * 10)
            reasons.append(f"Amount differs by {amount_diff:.2f}")
        else:
            scores["amount"] = 0.0

        # Date score
        day_gap = abs((transaction.transaction_date - event.expected_date).days)
        horizon = max(self.config.lookback_days, self.config.lookahead_days, 1)
        if day_gap == 0:
            scores["date"] = 1.0
            reasons.append("Same date")
        else:
            scores["date"] = max(0.0, 1.0 - day_gap / horizon)
            reasons.append(f"Date within {day_gap} days")

        # Reference score
        scores["reference"] = self._reference_score(transaction, event)
        if scores["reference"] == 1.0:
            reasons.append("Reference match")

        # Counterparty score
        if transaction.counterparty and event.counterparty:
            name_score = self._name_similarity(transaction.counterparty, event.counterparty)
            scores["counterparty"] = name_score
            if name_score >= 0.9:
                reasons.append("Strong counterparty name match")
            elif name_score >= 0.7:
                reasons.append("Similar counterparty name")
        else:
            scores["counterparty"] = 0.5

        total_score = (
            scores["amount"] * self.config.weight_amount +
            scores["date"] * self.config.weight_date +
            scores["reference"] * self.config.weight_reference +
            scores["counterparty"] * self.config.weight_counterparty
        )
        return round(total_score, 4), scores, reasons

    @staticmethod
    def _reference_score(transaction: Transaction, event: ExpectedEvent) -> float:
        text = transaction.search_text().upper()
        tokens = [t.strip().upper() for t in (event.receipt_id, event.reference) if t and t.strip()]
        if not tokens or not text:
            return 0.5
        if any(token in text for token in tokens):
            return 1.0
        return 0.0

    def _name_similarity(self, name1: str, name2: str) -> float:
        """Counterparty name similarity using multiple algorithms."""
        n1 = self._normalize_name(name1)
        n2 = self._normalize_name(name2)

        if not n1 or not n2:
            return 0.0
        if n1 == n2:
            return 1.0

        # Token set ratio handles word order, partial ratio handles substrings,
        # Jaro-Winkler handles typos
        token_set = fuzz.token_set_ratio(n1, n2) / 100
        partial = fuzz.partial_ratio(n1, n2) / 100
        jaro = jellyfish.jaro_winkler_similarity(n1, n2)

        return token_set * 0.5 + partial * 0.3 + jaro * 0.2

    def _normalize_name(self, name: str) -> str:
        """Normalize a payer or payee name for comparison."""
        if not name:
            return ""

        cache_key = name.lower()
        if cache_key in self._name_cache:
            return self._name_cache[cache_key]

        normalized = name.upper()

        # Remove common company suffixes
        suffixes = [" LIMITED", " LTD", " PLC", " INC", " LLC", " CO", " COMPANY", " ENTERPRISES"]
        for suffix in suffixes:
            if normalized.endswith(suffix):
                normalized = normalized[:-len(suffix)]

        # Drop phone numbers M-PESA puts in front of names
        normalized = re.sub(r"\d+", " ", normalized)
        normalized = re.sub(r"[^\w\s]", "", normalized)
        normalized = " ".join(normalized.split())

        self._name_cache[cache_key] = normalized
        return normalized
