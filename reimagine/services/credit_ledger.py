"""
Reimagine Photos - Credit Ledger
Per-user credit balances with atomic reserve / refund / purchase operations.

The Firestore ledger keeps every conditional read-modify-write inside a
single-document Firestore transaction, so contention between concurrent
requests is resolved by the store (transaction retry), never by locks held
in this process.
"""
import asyncio
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from firebase_admin import firestore
from google.api_core import exceptions as google_exceptions
from google.auth.exceptions import GoogleAuthError
from loguru import logger


class UserNotFoundError(Exception):
    """The user has no ledger document."""


class LedgerError(Exception):
    """The ledger store could not complete the operation."""


def history_doc_id(idempotency_key: str) -> str:
    """
    Deterministic credit_history document ID for keyed mutations.
    The same key always maps to the same document, which is what makes a
    keyed increment apply at most once.
    """
    return f"txn_{idempotency_key.replace('/', '_').replace('.', '_')[:100]}"


def _history_entry(amount: int, reason: str, entry_type: str, balance_after: Optional[int] = None) -> Dict[str, Any]:
    entry = {
        'amount': amount,
        'reason': reason,
        'type': entry_type,
        'created_at': firestore.SERVER_TIMESTAMP,
    }
    if balance_after is not None:
        entry['balance_after'] = balance_after
    return entry


class CreditLedger(ABC):
    """Contract every ledger backend implements."""

    @abstractmethod
    async def try_decrement(self, user_id: str) -> bool:
        """
        Reserve one credit. Returns True if the balance was >= 1 and has been
        decremented, False if the balance was < 1 (nothing mutated).
        Raises UserNotFoundError if the user has no ledger document.
        """

    @abstractmethod
    async def increment(
        self,
        user_id: str,
        amount: int = 1,
        reason: str = "refund",
        idempotency_key: Optional[str] = None,
    ) -> bool:
        """
        Atomically add `amount` credits. Without an idempotency key every call
        applies. With a key, a repeated call is a no-op and returns False.
        """

    @abstractmethod
    async def get_balance(self, user_id: str) -> int:
        """Current balance. Raises UserNotFoundError if absent."""

    @abstractmethod
    async def provision(self, user_id: str, email: Optional[str]) -> int:
        """Create the user's ledger document if absent; return the balance."""


# ==================== FIRESTORE ====================

def reserve_credit(transaction, user_ref) -> Tuple[bool, int]:
    """Transaction body: decrement by one if the balance allows it."""
    snapshot = user_ref.get(transaction=transaction)
    if not snapshot.exists:
        raise UserNotFoundError(user_ref.id)

    current_credits = snapshot.to_dict().get('credits', 0)
    if current_credits < 1:
        return False, current_credits

    new_credits = current_credits - 1
    transaction.update(user_ref, {
        'credits': new_credits,
        'updated_at': firestore.SERVER_TIMESTAMP,
    })
    transaction.set(
        user_ref.collection('credit_history').document(),
        _history_entry(-1, 'edit_request', 'deduct', new_credits),
    )
    return True, new_credits


def apply_keyed_increment(transaction, user_ref, amount: int, reason: str, idempotency_key: str) -> Tuple[bool, int]:
    """Transaction body: add credits once per idempotency key."""
    txn_ref = user_ref.collection('credit_history').document(history_doc_id(idempotency_key))
    txn_doc = txn_ref.get(transaction=transaction)
    snapshot = user_ref.get(transaction=transaction)

    if not snapshot.exists:
        raise UserNotFoundError(user_ref.id)

    current_credits = snapshot.to_dict().get('credits', 0)
    if txn_doc.exists:
        return False, current_credits

    new_credits = current_credits + amount
    transaction.update(user_ref, {
        'credits': new_credits,
        'updated_at': firestore.SERVER_TIMESTAMP,
    })
    entry = _history_entry(amount, reason, 'credit', new_credits)
    entry['idempotency_key'] = idempotency_key
    transaction.set(txn_ref, entry)
    return True, new_credits


def create_profile_if_absent(transaction, user_ref, email: Optional[str], starting_credits: int) -> Tuple[bool, int]:
    """Transaction body: signup grant; an existing balance is never reset."""
    snapshot = user_ref.get(transaction=transaction)
    if snapshot.exists:
        return False, snapshot.to_dict().get('credits', 0)

    transaction.set(user_ref, {
        'email': email,
        'credits': starting_credits,
        'created_at': datetime.now(timezone.utc).isoformat(),
        'updated_at': firestore.SERVER_TIMESTAMP,
    })
    transaction.set(
        user_ref.collection('credit_history').document(),
        _history_entry(starting_credits, 'signup', 'grant', starting_credits),
    )
    return True, starting_credits


class FirestoreLedger(CreditLedger):
    """Credit ledger backed by the `users` collection in Firestore."""

    def __init__(
        self,
        client_factory: Callable[[], Any],
        collection: str = "users",
        starting_credits: int = 10,
    ):
        self._client_factory = client_factory
        self._client = None
        self.collection = collection
        self.starting_credits = starting_credits

    @property
    def db(self):
        if self._client is None:
            self._client = self._client_factory()
        return self._client

    def _user_ref(self, user_id: str):
        return self.db.collection(self.collection).document(user_id)

    async def _run(self, fn: Callable, *args):
        """Run blocking Firestore work off the event loop, mapping store errors."""
        try:
            return await asyncio.to_thread(fn, *args)
        except UserNotFoundError:
            raise
        except google_exceptions.NotFound as e:
            raise UserNotFoundError(str(e)) from e
        except (google_exceptions.GoogleAPIError, GoogleAuthError) as e:
            raise LedgerError(str(e)) from e
        except ValueError as e:
            # Raised by transactional() once commit retries run out, and by bad credentials
            raise LedgerError(str(e)) from e

    async def try_decrement(self, user_id: str) -> bool:
        def run():
            transaction = self.db.transaction()
            return firestore.transactional(reserve_credit)(transaction, self._user_ref(user_id))

        reserved, credits = await self._run(run)
        if reserved:
            logger.info(f"💰 [ATOMIC] Reserved 1 credit from {user_id}. {credits + 1} -> {credits}")
        else:
            logger.warning(f"🚫 Insufficient credits for {user_id}: has {credits}")
        return reserved

    async def increment(
        self,
        user_id: str,
        amount: int = 1,
        reason: str = "refund",
        idempotency_key: Optional[str] = None,
    ) -> bool:
        if amount <= 0:
            raise ValueError("amount must be positive")

        if idempotency_key:
            def run_keyed():
                transaction = self.db.transaction()
                return firestore.transactional(apply_keyed_increment)(
                    transaction, self._user_ref(user_id), amount, reason, idempotency_key
                )

            applied, credits = await self._run(run_keyed)
            if applied:
                logger.info(f"💰 [ATOMIC] Added {amount} credits to {user_id} ({reason}). Balance: {credits}")
            else:
                logger.info(f"ℹ️ Credit key already applied for {user_id}: {idempotency_key}")
            return applied

        def run_increment():
            user_ref = self._user_ref(user_id)
            batch = self.db.batch()
            batch.update(user_ref, {
                'credits': firestore.Increment(amount),
                'updated_at': firestore.SERVER_TIMESTAMP,
            })
            batch.set(
                user_ref.collection('credit_history').document(),
                _history_entry(amount, reason, 'refund' if reason.startswith('refund') else 'credit'),
            )
            batch.commit()

        await self._run(run_increment)
        logger.info(f"💰 [ATOMIC] Added {amount} credits to {user_id} ({reason})")
        return True

    async def get_balance(self, user_id: str) -> int:
        def run():
            return self._user_ref(user_id).get()

        snapshot = await self._run(run)
        if not snapshot.exists:
            raise UserNotFoundError(user_id)
        return snapshot.to_dict().get('credits', 0)

    async def provision(self, user_id: str, email: Optional[str]) -> int:
        def run():
            transaction = self.db.transaction()
            return firestore.transactional(create_profile_if_absent)(
                transaction, self._user_ref(user_id), email, self.starting_credits
            )

        created, credits = await self._run(run)
        if created:
            logger.info(f"✅ Created profile for {user_id} with {credits} credits")
        return credits


# ==================== IN-MEMORY ====================

class MemoryLedger(CreditLedger):
    """
    Process-local ledger for development and tests.
    The lock plays the role of the store's transaction; it is held only for
    the read-modify-write itself.
    """

    def __init__(self, starting_credits: int = 10):
        self.starting_credits = starting_credits
        self._lock = threading.Lock()
        self._users: Dict[str, Dict[str, Any]] = {}
        self._history: Dict[str, List[Dict[str, Any]]] = {}

    def seed(self, user_id: str, credits: int, email: Optional[str] = None):
        with self._lock:
            self._users[user_id] = {
                'email': email,
                'credits': credits,
                'created_at': datetime.now(timezone.utc).isoformat(),
            }
            self._history.setdefault(user_id, [])

    def history(self, user_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._history.get(user_id, []))

    def _record(self, user_id: str, **entry):
        entry['created_at'] = datetime.now(timezone.utc)
        self._history.setdefault(user_id, []).append(entry)

    async def try_decrement(self, user_id: str) -> bool:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                raise UserNotFoundError(user_id)
            if user['credits'] < 1:
                return False
            user['credits'] -= 1
            self._record(user_id, amount=-1, reason='edit_request', type='deduct', balance_after=user['credits'])
            return True

    async def increment(
        self,
        user_id: str,
        amount: int = 1,
        reason: str = "refund",
        idempotency_key: Optional[str] = None,
    ) -> bool:
        if amount <= 0:
            raise ValueError("amount must be positive")

        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                raise UserNotFoundError(user_id)
            if idempotency_key and any(
                e.get('idempotency_key') == idempotency_key for e in self._history.get(user_id, [])
            ):
                return False
            user['credits'] += amount
            self._record(
                user_id,
                amount=amount,
                reason=reason,
                type='refund' if reason.startswith('refund') else 'credit',
                balance_after=user['credits'],
                idempotency_key=idempotency_key,
            )
            return True

    async def get_balance(self, user_id: str) -> int:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                raise UserNotFoundError(user_id)
            return user['credits']

    async def provision(self, user_id: str, email: Optional[str]) -> int:
        with self._lock:
            user = self._users.get(user_id)
            if user is not None:
                return user['credits']
            self._users[user_id] = {
                'email': email,
                'credits': self.starting_credits,
                'created_at': datetime.now(timezone.utc).isoformat(),
            }
            self._record(user_id, amount=self.starting_credits, reason='signup', type='grant',
                         balance_after=self.starting_credits)
            return self.starting_credits
