import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.responses import Response
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal
from errors import StorageError, ValidationError
from models import EditScope
from periods import Period, parse_month
from schemas import (
    AccountIn,
    AccountOut,
    CategoryIn,
    CategoryNode,
    CategoryOut,
    ClearedIn,
    IdsIn,
    MonthSummary,
    TransactionCreateIn,
    TransactionEditIn,
    TransactionOut,
)
from services import (
    AccountService,
    CategoryService,
    CSVService,
    MetricsService,
    TransactionFilters,
    TransactionService,
)


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Finance Tracker")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def month_from_query(month: Optional[str]) -> Period:
    try:
        return parse_month(month)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def storage_failure(exc: StorageError) -> HTTPException:
    logger.error(f"storage_error: reason={exc.reason}")
    return HTTPException(status_code=500, detail=exc.reason)


@app.get("/api/transactions", response_model=list[TransactionOut])
def list_transactions(
    month: Optional[str] = None,
    account: list[int] = Query(default=[]),
    category: list[int] = Query(default=[]),
    q: Optional[str] = None,
    uncleared: bool = False,
    db: Session = Depends(get_db),
):
    filters = TransactionFilters(
        period=month_from_query(month),
        account_ids=account,
        category_ids=category,
        search=q,
        uncleared_only=uncleared,
    )
    try:
        return TransactionService(db).list(filters)
    except StorageError as exc:
        raise storage_failure(exc) from exc


@app.post("/api/transactions", response_model=list[TransactionOut], status_code=201)
def create_transactions(payload: TransactionCreateIn, db: Session = Depends(get_db)):
    try:
        return TransactionService(db).create(payload)
    except StorageError as exc:
        raise storage_failure(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/api/transactions/export.csv")
def export_transactions_csv(
    month: Optional[str] = None, db: Session = Depends(get_db)
) -> Response:
    period = month_from_query(month)
    transactions = TransactionService(db).list(TransactionFilters(period=period))
    content = CSVService(db).export(transactions)
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={
            "Content-Disposition": f'attachment; filename="transactions-{period.slug}.csv"'
        },
    )


@app.post("/api/transactions/bulk-delete")
def bulk_delete_transactions(payload: IdsIn, db: Session = Depends(get_db)):
    try:
        deleted = TransactionService(db).delete_many(payload.ids)
    except StorageError as exc:
        raise storage_failure(exc) from exc
    return {"deleted": deleted}


@app.post("/api/transactions/cleared", response_model=list[TransactionOut])
def set_transactions_cleared(payload: ClearedIn, db: Session = Depends(get_db)):
    try:
        return TransactionService(db).set_cleared(payload.ids, payload.cleared)
    except StorageError as exc:
        raise storage_failure(exc) from exc


@app.get("/api/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        return TransactionService(db).get(transaction_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.put("/api/transactions/{transaction_id}", response_model=list[TransactionOut])
def update_transaction(
    transaction_id: int, payload: TransactionEditIn, db: Session = Depends(get_db)
):
    service = TransactionService(db)
    try:
        service.get(transaction_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    try:
        return service.update(transaction_id, payload)
    except StorageError as exc:
        raise storage_failure(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    scope: Optional[EditScope] = None,
    db: Session = Depends(get_db),
):
    try:
        deleted = TransactionService(db).delete(transaction_id, scope)
    except StorageError as exc:
        raise storage_failure(exc) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"deleted": deleted}


@app.get("/api/accounts", response_model=list[AccountOut])
def list_accounts(include_archived: bool = False, db: Session = Depends(get_db)):
    return AccountService(db).list_all(include_archived=include_archived)


@app.post("/api/accounts", response_model=AccountOut, status_code=201)
def create_account(payload: AccountIn, db: Session = Depends(get_db)):
    return AccountService(db).create(payload)


@app.put("/api/accounts/{account_id}", response_model=AccountOut)
def update_account(account_id: int, payload: AccountIn, db: Session = Depends(get_db)):
    try:
        return AccountService(db).update(account_id, payload)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/api/accounts/{account_id}/archive")
def archive_account(account_id: int, db: Session = Depends(get_db)):
    try:
        AccountService(db).archive(account_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"archived": True}


@app.delete("/api/accounts/{account_id}")
def delete_account(account_id: int, db: Session = Depends(get_db)):
    try:
        AccountService(db).delete(account_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"deleted": True}


@app.get("/api/categories", response_model=list[CategoryOut])
def list_categories(db: Session = Depends(get_db)):
    return CategoryService(db).list_all()


@app.get("/api/categories/tree", response_model=list[CategoryNode])
def category_tree(db: Session = Depends(get_db)):
    return CategoryService(db).tree()


@app.post("/api/categories", response_model=CategoryOut, status_code=201)
def create_category(payload: CategoryIn, db: Session = Depends(get_db)):
    try:
        return CategoryService(db).create(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.put("/api/categories/{category_id}", response_model=CategoryOut)
def update_category(
    category_id: int, payload: CategoryIn, db: Session = Depends(get_db)
):
    try:
        return CategoryService(db).update(category_id, payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.delete("/api/categories/{category_id}")
def delete_category(category_id: int, db: Session = Depends(get_db)):
    try:
        CategoryService(db).delete(category_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"deleted": True}


@app.get("/api/summary", response_model=MonthSummary)
def month_summary(month: Optional[str] = None, db: Session = Depends(get_db)):
    return MetricsService(db).month_summary(month_from_query(month))


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)
