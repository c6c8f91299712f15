"""
Persistence for plans, runs, quality validations, variants and credits.

One repository protocol per entity. Two implementations of each:
  - InMemory*: thread-safe dicts, used in development and tests
  - Supabase*: service-role client, tables plans / runs /
               quality_validations / variants / profiles / credit_transactions

Runs are only ever advanced through RunRepository.transition(), a
compare-and-set on the current state, so duplicate or out-of-order provider
callbacks cannot move a run backwards or apply a terminal transition twice.
"""

import os
import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Protocol

from supabase import create_client, Client

from .models import (
    Plan,
    QualityValidationRecord,
    Run,
    RunState,
    Variant,
    VariantStatus,
)

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# Protocols
# ═════════════════════════════════════════════════════════════════════════════

class PlanRepository(Protocol):
    def get(self, plan_id: str) -> Optional[Plan]: ...
    def put(self, plan: Plan) -> Plan: ...
    def list_by_variant(self, variant_id: str) -> list[Plan]: ...


class RunRepository(Protocol):
    def get(self, run_id: str) -> Optional[Run]: ...
    def put(self, run: Run) -> Run: ...
    def update(self, run_id: str, **fields: Any) -> Run: ...
    def transition(
        self, run_id: str, from_states: Iterable[RunState], to_state: RunState, **fields: Any
    ) -> Optional[Run]: ...
    def list_by_retry_of(self, run_id: str) -> list[Run]: ...
    def list_by_variant(self, variant_id: str) -> list[Run]: ...
    def list_by_state(self, states: Iterable[RunState]) -> list[Run]: ...


class QualityValidationRepository(Protocol):
    def put(self, record: QualityValidationRecord) -> QualityValidationRecord: ...
    def list_by_run(self, run_id: str) -> list[QualityValidationRecord]: ...


class VariantRepository(Protocol):
    def get(self, variant_id: str) -> Optional[Variant]: ...
    def set_status(
        self,
        variant_id: str,
        status: VariantStatus,
        video_url: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Variant: ...


class CreditLedger(Protocol):
    def balance(self, user_id: str) -> int: ...
    def charge(self, user_id: str, amount: int, key: str, reason: str = "render") -> bool: ...


# ═════════════════════════════════════════════════════════════════════════════
# In-memory implementations
# ═════════════════════════════════════════════════════════════════════════════

class InMemoryPlanRepository:
    def __init__(self):
        self._lock = threading.Lock()
        self._plans: dict[str, Plan] = {}

    def get(self, plan_id: str) -> Optional[Plan]:
        with self._lock:
            plan = self._plans.get(plan_id)
            return plan.model_copy(deep=True) if plan else None

    def put(self, plan: Plan) -> Plan:
        with self._lock:
            self._plans[plan.id] = plan.model_copy(deep=True)
        return plan

    def list_by_variant(self, variant_id: str) -> list[Plan]:
        with self._lock:
            return [p.model_copy(deep=True) for p in self._plans.values() if p.variant_id == variant_id]


class InMemoryRunRepository:
    def __init__(self):
        self._lock = threading.Lock()
        self._runs: dict[str, Run] = {}

    def get(self, run_id: str) -> Optional[Run]:
        with self._lock:
            return self._runs.get(run_id)

    def put(self, run: Run) -> Run:
        with self._lock:
            self._runs[run.id] = run
        return run

    def update(self, run_id: str, **fields: Any) -> Run:
        with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise LookupError(f"Run {run_id} not found")
            updated = run.model_copy(update={**fields, "updated_at": _now()})
            self._runs[run_id] = updated
            return updated

    def transition(
        self, run_id: str, from_states: Iterable[RunState], to_state: RunState, **fields: Any
    ) -> Optional[Run]:
        allowed = set(from_states)
        with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise LookupError(f"Run {run_id} not found")
            if run.state not in allowed:
                return None
            updated = run.transition_to(to_state, **fields)
            self._runs[run_id] = updated
            return updated

    def list_by_retry_of(self, run_id: str) -> list[Run]:
        with self._lock:
            return [r for r in self._runs.values() if r.retry_of == run_id]

    def list_by_variant(self, variant_id: str) -> list[Run]:
        with self._lock:
            return [r for r in self._runs.values() if r.variant_id == variant_id]

    def list_by_state(self, states: Iterable[RunState]) -> list[Run]:
        wanted = set(states)
        with self._lock:
            return [r for r in self._runs.values() if r.state in wanted]


class InMemoryQualityValidationRepository:
    def __init__(self):
        self._lock = threading.Lock()
        self._records: list[QualityValidationRecord] = []

    def put(self, record: QualityValidationRecord) -> QualityValidationRecord:
        with self._lock:
            self._records.append(record)
        return record

    def list_by_run(self, run_id: str) -> list[QualityValidationRecord]:
        with self._lock:
            return [r for r in self._records if r.run_id == run_id]


class InMemoryVariantRepository:
    def __init__(self):
        self._lock = threading.Lock()
        self._variants: dict[str, Variant] = {}

    def get(self, variant_id: str) -> Optional[Variant]:
        with self._lock:
            return self._variants.get(variant_id)

    def set_status(
        self,
        variant_id: str,
        status: VariantStatus,
        video_url: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Variant:
        with self._lock:
            variant = self._variants.get(variant_id) or Variant(id=variant_id)
            changes: dict[str, Any] = {"status": status, "updated_at": _now(), "error": error}
            if video_url is not None:
                changes["video_url"] = video_url
            variant = variant.model_copy(update=changes)
            self._variants[variant_id] = variant
            return variant


class InMemoryCreditLedger:
    def __init__(self, balances: Optional[dict[str, int]] = None):
        self._lock = threading.Lock()
        self._balances: dict[str, int] = dict(balances or {})
        self._charged: set[str] = set()

    def grant(self, user_id: str, amount: int) -> int:
        with self._lock:
            self._balances[user_id] = self._balances.get(user_id, 0) + amount
            return self._balances[user_id]

    def balance(self, user_id: str) -> int:
        with self._lock:
            return self._balances.get(user_id, 0)

    def charge(self, user_id: str, amount: int, key: str, reason: str = "render") -> bool:
        """Deduct ``amount`` once per ``key``; a repeated key is a no-op."""
        with self._lock:
            if key in self._charged:
                return False
            self._charged.add(key)
            self._balances[user_id] = self._balances.get(user_id, 0) - amount
            logger.info(f"Charged {amount} credit(s) to {user_id} for {reason} ({key})")
            return True


# ═════════════════════════════════════════════════════════════════════════════
# Supabase implementations
# ═════════════════════════════════════════════════════════════════════════════

_service_client: Optional[Client] = None


def _get_service_client() -> Client:
    """Lazy-init Supabase client using service role key."""
    global _service_client
    if _service_client is None:
        url = os.getenv("SUPABASE_URL", "")
        key = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
        if not url or not key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        _service_client = create_client(url, key)
    return _service_client


def _run_row(fields: dict[str, Any]) -> dict[str, Any]:
    row = {}
    for key, value in fields.items():
        if isinstance(value, datetime):
            row[key] = value.isoformat()
        elif hasattr(value, "value"):
            row[key] = value.value
        else:
            row[key] = value
    return row


class SupabasePlanRepository:
    def __init__(self, client: Optional[Client] = None):
        self._sb = client

    @property
    def sb(self) -> Client:
        return self._sb or _get_service_client()

    def get(self, plan_id: str) -> Optional[Plan]:
        result = self.sb.table("plans").select("plan").eq("id", plan_id).limit(1).execute()
        if not result.data:
            return None
        return Plan.model_validate(result.data[0]["plan"])

    def put(self, plan: Plan) -> Plan:
        self.sb.table("plans").upsert({
            "id": plan.id,
            "variant_id": plan.variant_id,
            "is_validated": plan.is_validated,
            "plan": plan.model_dump(mode="json", by_alias=True),
            "updated_at": plan.updated_at.isoformat(),
        }).execute()
        return plan

    def list_by_variant(self, variant_id: str) -> list[Plan]:
        result = self.sb.table("plans").select("plan").eq("variant_id", variant_id).execute()
        return [Plan.model_validate(row["plan"]) for row in result.data or []]


class SupabaseRunRepository:
    def __init__(self, client: Optional[Client] = None):
        self._sb = client

    @property
    def sb(self) -> Client:
        return self._sb or _get_service_client()

    def get(self, run_id: str) -> Optional[Run]:
        result = self.sb.table("runs").select("*").eq("id", run_id).limit(1).execute()
        return Run.model_validate(result.data[0]) if result.data else None

    def put(self, run: Run) -> Run:
        self.sb.table("runs").upsert(run.model_dump(mode="json")).execute()
        return run

    def update(self, run_id: str, **fields: Any) -> Run:
        row = _run_row({**fields, "updated_at": _now()})
        result = self.sb.table("runs").update(row).eq("id", run_id).execute()
        if not result.data:
            raise LookupError(f"Run {run_id} not found")
        return Run.model_validate(result.data[0])

    def transition(
        self, run_id: str, from_states: Iterable[RunState], to_state: RunState, **fields: Any
    ) -> Optional[Run]:
        allowed = list(from_states)
        current = self.get(run_id)
        if current is None:
            raise LookupError(f"Run {run_id} not found")
        if current.state not in allowed:
            return None
        # Validates the move before the conditional write
        current.transition_to(to_state)

        row = _run_row({**fields, "state": to_state, "updated_at": _now()})
        result = (
            self.sb.table("runs")
            .update(row)
            .eq("id", run_id)
            .in_("state", [s.value for s in allowed])
            .execute()
        )
        if not result.data:
            # Lost the race to a concurrent transition
            return None
        return Run.model_validate(result.data[0])

    def list_by_retry_of(self, run_id: str) -> list[Run]:
        result = self.sb.table("runs").select("*").eq("retry_of", run_id).execute()
        return [Run.model_validate(row) for row in result.data or []]

    def list_by_variant(self, variant_id: str) -> list[Run]:
        result = self.sb.table("runs").select("*").eq("variant_id", variant_id).execute()
        return [Run.model_validate(row) for row in result.data or []]

    def list_by_state(self, states: Iterable[RunState]) -> list[Run]:
        result = self.sb.table("runs").select("*").in_("state", [s.value for s in states]).execute()
        return [Run.model_validate(row) for row in result.data or []]


class SupabaseQualityValidationRepository:
    def __init__(self, client: Optional[Client] = None):
        self._sb = client

    @property
    def sb(self) -> Client:
        return self._sb or _get_service_client()

    def put(self, record: QualityValidationRecord) -> QualityValidationRecord:
        self.sb.table("quality_validations").insert(record.model_dump(mode="json")).execute()
        return record

    def list_by_run(self, run_id: str) -> list[QualityValidationRecord]:
        result = (
            self.sb.table("quality_validations").select("*").eq("run_id", run_id)
            .order("created_at").execute()
        )
        return [QualityValidationRecord.model_validate(row) for row in result.data or []]


class SupabaseVariantRepository:
    def __init__(self, client: Optional[Client] = None):
        self._sb = client

    @property
    def sb(self) -> Client:
        return self._sb or _get_service_client()

    def get(self, variant_id: str) -> Optional[Variant]:
        result = self.sb.table("variants").select("*").eq("id", variant_id).limit(1).execute()
        return Variant.model_validate(result.data[0]) if result.data else None

    def set_status(
        self,
        variant_id: str,
        status: VariantStatus,
        video_url: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Variant:
        row: dict[str, Any] = {
            "id": variant_id,
            "status": status.value,
            "error": error,
            "updated_at": _now().isoformat(),
        }
        if video_url is not None:
            row["video_url"] = video_url
        result = self.sb.table("variants").upsert(row).execute()
        return Variant.model_validate(result.data[0]) if result.data else Variant(
            id=variant_id, status=status, video_url=video_url, error=error
        )


class SupabaseCreditLedger:
    def __init__(self, client: Optional[Client] = None):
        self._sb = client

    @property
    def sb(self) -> Client:
        return self._sb or _get_service_client()

    def balance(self, user_id: str) -> int:
        profile = self.sb.table("profiles").select("credit_balance").eq("id", user_id).limit(1).execute()
        if not profile.data:
            return 0
        return profile.data[0].get("credit_balance", 0) or 0

    def charge(self, user_id: str, amount: int, key: str, reason: str = "render") -> bool:
        existing = (
            self.sb.table("credit_transactions").select("id")
            .eq("job_id", key).eq("reason", reason).limit(1).execute()
        )
        if existing.data:
            logger.info(f"Credit charge for {key} already recorded, skipping")
            return False

        new_balance = self.balance(user_id) - amount
        self.sb.table("profiles").update({
            "credit_balance": new_balance,
        }).eq("id", user_id).execute()

        self.sb.table("credit_transactions").insert({
            "user_id": user_id,
            "amount": -amount,
            "balance_after": new_balance,
            "reason": reason,
            "job_id": key,
            "metadata": json.dumps({"type": "render_run"}),
        }).execute()
        logger.info(f"Charged {amount} credit(s) to {user_id} for {reason} ({key}), balance={new_balance}")
        return True


# ═════════════════════════════════════════════════════════════════════════════
# Bundle
# ═════════════════════════════════════════════════════════════════════════════

class Stores:
    """The set of repositories one pipeline instance works against."""

    def __init__(
        self,
        plans: PlanRepository,
        runs: RunRepository,
        validations: QualityValidationRepository,
        variants: VariantRepository,
        credits: CreditLedger,
    ):
        self.plans = plans
        self.runs = runs
        self.validations = validations
        self.variants = variants
        self.credits = credits

    @classmethod
    def in_memory(cls, balances: Optional[dict[str, int]] = None) -> "Stores":
        return cls(
            plans=InMemoryPlanRepository(),
            runs=InMemoryRunRepository(),
            validations=InMemoryQualityValidationRepository(),
            variants=InMemoryVariantRepository(),
            credits=InMemoryCreditLedger(balances),
        )

    @classmethod
    def supabase(cls, client: Optional[Client] = None) -> "Stores":
        return cls(
            plans=SupabasePlanRepository(client),
            runs=SupabaseRunRepository(client),
            validations=SupabaseQualityValidationRepository(client),
            variants=SupabaseVariantRepository(client),
            credits=SupabaseCreditLedger(client),
        )
