from datetime import datetime
from decimal import Decimal

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from budget_planner.budget_summary import summarize_plan
from budget_planner.logging_setup import configure_logging, get_logger
from budget_planner.models import BudgetPlan, Category, Transaction
from budget_planner.moves import move_transaction, place_new_transaction_rank, reorder_transaction
from budget_planner.ranking import RebalanceRequired
from budget_planner.settings import Settings, load_settings
from budget_planner.store import (
    CategoryNotFound,
    PlannerNotFound,
    PlannerStore,
    PlanNotFound,
    TransactionNotFound,
)

_logger = get_logger("budget_planner.main")


class PlanResponse(BaseModel):
    id: int
    name: str
    base_currency: str
    initial_balance: Decimal
    created_at: datetime | None = None


class InitialBalancePayload(BaseModel):
    initial_balance: Decimal

    @classmethod
    def validate_payload(cls, payload: "InitialBalancePayload") -> "InitialBalancePayload":
        if payload.initial_balance < 0:
            raise ValueError("Initial balance cannot be negative.")
        return payload


class CategoryPayload(BaseModel):
    name: str
    color: str | None = None

    @classmethod
    def validate_payload(cls, payload: "CategoryPayload") -> "CategoryPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Category name required.")
        payload.color = payload.color.strip() if payload.color else None
        return payload


class CategoryResponse(BaseModel):
    id: int
    plan_id: int
    name: str
    color: str
    sort_order: int = 0
    created_at: datetime | None = None


class TransactionPayload(BaseModel):
    amount: Decimal
    name: str = ""
    category_id: int | None = None
    is_spent: bool = False

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        payload.name = payload.name.strip()
        if payload.amount <= 0:
            raise ValueError("Amount must be greater than zero.")
        return payload


class TransactionPatchPayload(BaseModel):
    name: str | None = None
    amount: Decimal | None = None
    is_spent: bool | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPatchPayload") -> "TransactionPatchPayload":
        if payload.name is not None:
            payload.name = payload.name.strip()
        if payload.amount is not None and payload.amount <= 0:
            raise ValueError("Amount must be greater than zero.")
        return payload


class TransactionResponse(BaseModel):
    id: int
    plan_id: int
    amount: Decimal
    name: str
    category_id: int | None = None
    is_spent: bool
    spent_at: datetime | None = None
    rank: str | None = None
    created_at: datetime | None = None


class MovePayload(BaseModel):
    to_category_id: int | None = None
    before_transaction_id: int | None = None
    after_transaction_id: int | None = None


class ReorderPayload(BaseModel):
    before_transaction_id: int | None = None
    after_transaction_id: int | None = None


class ColumnTotalsResponse(BaseModel):
    category_id: int | None = None
    allocated: Decimal
    spent: Decimal
    count: int


class PlanSummaryResponse(BaseModel):
    initial_balance: Decimal
    total_allocated: Decimal
    total_spent: Decimal
    remaining_balance: Decimal
    columns: list[ColumnTotalsResponse]


class SnapshotResponse(BaseModel):
    plan: PlanResponse
    categories: list[CategoryResponse]
    transactions: list[TransactionResponse]
    summary: PlanSummaryResponse


def plan_response(plan: BudgetPlan) -> PlanResponse:
    return PlanResponse(
        id=plan.id,
        name=plan.name,
        base_currency=plan.base_currency,
        initial_balance=plan.initial_balance,
        created_at=plan.created_at,
    )


def category_response(category: Category) -> CategoryResponse:
    return CategoryResponse(
        id=category.id,
        plan_id=category.plan_id,
        name=category.name,
        color=category.color,
        sort_order=category.sort_order,
        created_at=category.created_at,
    )


def transaction_response(txn: Transaction) -> TransactionResponse:
    return TransactionResponse(
        id=txn.id,
        plan_id=txn.plan_id,
        amount=txn.amount,
        name=txn.name,
        category_id=txn.category_id,
        is_spent=txn.is_spent,
        spent_at=txn.spent_at,
        rank=txn.rank,
        created_at=txn.created_at,
    )


def get_user_id(x_user_id: str | None) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing user identity.")
    return x_user_id.strip()


def build_engine(settings: Settings) -> Engine:
    return create_engine(settings.database_url, connect_args=settings.connect_args)


def create_app(settings: Settings | None = None, engine: Engine | None = None) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.log_level)
    engine = engine if engine is not None else build_engine(settings)
    store = PlannerStore(engine, base_currency=settings.base_currency)

    app = FastAPI()
    app.state.store = store
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    def init_db() -> None:
        store.create_schema()

    @app.exception_handler(PlannerNotFound)
    def handle_not_found(request: Request, exc: PlannerNotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(RebalanceRequired)
    def handle_rebalance_required(request: Request, exc: RebalanceRequired) -> JSONResponse:
        _logger.warning("Move could not be placed after rebalancing: %s", exc)
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(IntegrityError)
    def handle_integrity_error(request: Request, exc: IntegrityError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": "Conflicting change."})

    @app.exception_handler(SQLAlchemyError)
    def handle_storage_failure(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        _logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": "Storage failure."})

    def require_plan(user_id: str, plan_id: int) -> BudgetPlan:
        plan = store.get_plan(plan_id)
        if plan.user_id != user_id:
            raise PlanNotFound(f"Plan {plan_id} not found.")
        return plan

    def require_category(user_id: str, category_id: int, plan_id: int | None = None) -> Category:
        category = store.get_category(category_id)
        try:
            require_plan(user_id, category.plan_id)
        except PlanNotFound as exc:
            raise CategoryNotFound(f"Category {category_id} not found.") from exc
        if plan_id is not None and category.plan_id != plan_id:
            raise CategoryNotFound(f"Category {category_id} not found.")
        return category

    def require_transaction(user_id: str, transaction_id: int, plan_id: int | None = None) -> Transaction:
        txn = store.get_transaction(transaction_id)
        try:
            require_plan(user_id, txn.plan_id)
        except PlanNotFound as exc:
            raise TransactionNotFound(f"Transaction {transaction_id} not found.") from exc
        if plan_id is not None and txn.plan_id != plan_id:
            raise TransactionNotFound(f"Transaction {transaction_id} not found.")
        return txn

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    @app.get("/plans/default", response_model=PlanResponse)
    def default_plan(x_user_id: str | None = Header(None, alias="x-user-id")) -> PlanResponse:
        user_id = get_user_id(x_user_id)
        return plan_response(store.get_or_create_default_plan(user_id))

    @app.get("/plans/{plan_id}/snapshot", response_model=SnapshotResponse)
    def plan_snapshot(
        plan_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
    ) -> SnapshotResponse:
        user_id = get_user_id(x_user_id)
        require_plan(user_id, plan_id)
        snapshot = store.get_snapshot(plan_id)
        summary = summarize_plan(
            snapshot.plan.initial_balance,
            snapshot.transactions,
            [category.id for category in snapshot.categories],
        )
        return SnapshotResponse(
            plan=plan_response(snapshot.plan),
            categories=[category_response(category) for category in snapshot.categories],
            transactions=[transaction_response(txn) for txn in snapshot.transactions],
            summary=PlanSummaryResponse(
                initial_balance=summary.initial_balance,
                total_allocated=summary.total_allocated,
                total_spent=summary.total_spent,
                remaining_balance=summary.remaining_balance,
                columns=[
                    ColumnTotalsResponse(
                        category_id=column.category_id,
                        allocated=column.allocated,
                        spent=column.spent,
                        count=column.count,
                    )
                    for column in summary.columns
                ],
            ),
        )

    @app.put("/plans/{plan_id}/initial-balance", response_model=PlanResponse)
    def update_initial_balance(
        plan_id: int,
        payload: InitialBalancePayload,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> PlanResponse:
        user_id = get_user_id(x_user_id)
        try:
            payload = InitialBalancePayload.validate_payload(payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        require_plan(user_id, plan_id)
        return plan_response(store.update_initial_balance(plan_id, payload.initial_balance))

    @app.post("/plans/{plan_id}/categories", response_model=CategoryResponse)
    def create_category(
        plan_id: int,
        payload: CategoryPayload,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> CategoryResponse:
        user_id = get_user_id(x_user_id)
        try:
            payload = CategoryPayload.validate_payload(payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        require_plan(user_id, plan_id)
        return category_response(store.create_category(plan_id, payload.name, payload.color))

    @app.delete("/categories/{category_id}")
    def delete_category(
        category_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
    ) -> dict:
        user_id = get_user_id(x_user_id)
        require_category(user_id, category_id)
        moved = store.delete_category(category_id)
        return {"status": "deleted", "moved_to_pool": moved}

    @app.post("/categories/{category_id}/mark-spent", response_model=list[TransactionResponse])
    def mark_category_spent(
        category_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
    ) -> list[TransactionResponse]:
        user_id = get_user_id(x_user_id)
        require_category(user_id, category_id)
        return [transaction_response(txn) for txn in store.mark_category_spent(category_id)]

    @app.post("/plans/{plan_id}/transactions", response_model=TransactionResponse)
    def create_transaction(
        plan_id: int,
        payload: TransactionPayload,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> TransactionResponse:
        user_id = get_user_id(x_user_id)
        try:
            payload = TransactionPayload.validate_payload(payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        require_plan(user_id, plan_id)
        if payload.category_id is not None:
            require_category(user_id, payload.category_id, plan_id)
        rank = place_new_transaction_rank(store, plan_id, payload.category_id)
        txn = store.create_transaction(
            plan_id,
            payload.amount,
            name=payload.name,
            category_id=payload.category_id,
            is_spent=payload.is_spent,
            rank=rank,
        )
        return transaction_response(txn)

    @app.patch("/transactions/{transaction_id}", response_model=TransactionResponse)
    def update_transaction(
        transaction_id: int,
        payload: TransactionPatchPayload,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> TransactionResponse:
        user_id = get_user_id(x_user_id)
        try:
            payload = TransactionPatchPayload.validate_payload(payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        require_transaction(user_id, transaction_id)
        txn = store.update_transaction(
            transaction_id,
            name=payload.name,
            amount=payload.amount,
            is_spent=payload.is_spent,
        )
        return transaction_response(txn)

    @app.delete("/transactions/{transaction_id}")
    def delete_transaction(
        transaction_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
    ) -> dict:
        user_id = get_user_id(x_user_id)
        require_transaction(user_id, transaction_id)
        store.delete_transaction(transaction_id)
        return {"status": "deleted"}

    @app.post("/transactions/{transaction_id}/move", response_model=TransactionResponse)
    def move(
        transaction_id: int,
        payload: MovePayload,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> TransactionResponse:
        user_id = get_user_id(x_user_id)
        txn = require_transaction(user_id, transaction_id)
        if payload.to_category_id is not None:
            require_category(user_id, payload.to_category_id, txn.plan_id)
        for neighbor_id in (payload.before_transaction_id, payload.after_transaction_id):
            if neighbor_id is not None:
                require_transaction(user_id, neighbor_id, txn.plan_id)
        moved = move_transaction(
            store,
            transaction_id,
            payload.to_category_id,
            before_transaction_id=payload.before_transaction_id,
            after_transaction_id=payload.after_transaction_id,
        )
        return transaction_response(moved)

    @app.post("/transactions/{transaction_id}/reorder", response_model=TransactionResponse)
    def reorder(
        transaction_id: int,
        payload: ReorderPayload,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> TransactionResponse:
        user_id = get_user_id(x_user_id)
        txn = require_transaction(user_id, transaction_id)
        for neighbor_id in (payload.before_transaction_id, payload.after_transaction_id):
            if neighbor_id is not None:
                require_transaction(user_id, neighbor_id, txn.plan_id)
        moved = reorder_transaction(
            store,
            transaction_id,
            before_transaction_id=payload.before_transaction_id,
            after_transaction_id=payload.after_transaction_id,
        )
        return transaction_response(moved)

    return app


app = create_app()
