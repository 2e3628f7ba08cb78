import sqlite3
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tablecalc.config import Settings, configure_logging
from tablecalc.formula.errors import (
    BulkLimitExceededError,
    FormulaValidationError,
    InvalidRowOrderError,
    NotFoundError,
    TableCalcError,
)
from tablecalc.formula.registry import ContextRegistry
from tablecalc.models import (
    AffectedCell,
    BulkCellUpdateRequest,
    BulkUpdateResult,
    CellUpdate,
    CellUpdateResult,
    Column,
    ColumnCreate,
    ColumnFormulaUpdate,
    ColumnRecalcResult,
    FormulaCell,
    FormulaValidateRequest,
    FormulaValidation,
    RecalcRequest,
    RecalcResponse,
    RecalcStats,
    Row,
    RowOrderResult,
    RowOrderUpdate,
    Table,
    TableCreate,
    TableRename,
)
from tablecalc.service import FormulaService
from tablecalc.storage import DatabaseManager, Store


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings()
    configure_logging(settings.log_level)

    db = DatabaseManager(settings.db_path)
    db.initialize_schema()
    store = Store(db)
    contexts = ContextRegistry(
        store,
        row_order_policy=settings.row_order_policy,
        full_rescan=settings.full_rescan,
    )
    service = FormulaService(store, contexts, settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        contexts.dispose()

    app = FastAPI(lifespan=lifespan)
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Error mapping ───────────────────────────────────────────────

    @app.exception_handler(TableCalcError)
    async def table_calc_error(request: Request, exc: TableCalcError):
        if isinstance(exc, NotFoundError):
            status = 404
        elif isinstance(exc, BulkLimitExceededError):
            status = 413
        elif isinstance(exc, (FormulaValidationError, InvalidRowOrderError)):
            status = 422
        else:
            status = 400
        return JSONResponse(status_code=status, content={"detail": str(exc), "error_code": exc.code})

    @app.exception_handler(sqlite3.IntegrityError)
    async def integrity_error(request: Request, exc: sqlite3.IntegrityError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    # ── Tables ──────────────────────────────────────────────────────

    @app.post("/tables", response_model=Table)
    async def create_table(req: TableCreate):
        return service.create_table(req.name)

    @app.get("/tables", response_model=List[Table])
    async def list_tables():
        return store.tables.get_all()

    @app.get("/tables/{table_id}", response_model=Table)
    async def get_table(table_id: int):
        table = store.tables.get_by_id(table_id)
        if not table or table.is_archived:
            raise HTTPException(status_code=404, detail="Table not found")
        return table

    @app.put("/tables/{table_id}/name", response_model=Table)
    async def rename_table(table_id: int, req: TableRename):
        return service.rename_table(table_id, req.name)

    @app.delete("/tables/{table_id}")
    async def archive_table(table_id: int):
        service.archive_table(table_id)
        return {"ok": True}

    # ── Columns & rows ──────────────────────────────────────────────

    @app.post("/tables/{table_id}/columns", response_model=Column)
    async def add_column(table_id: int, req: ColumnCreate):
        return service.add_column(table_id, req)

    @app.get("/tables/{table_id}/columns", response_model=List[Column])
    async def list_columns(table_id: int):
        return store.columns.list_for_table(table_id)

    @app.put("/columns/{column_id}/formula", response_model=ColumnRecalcResult)
    async def set_column_formula(column_id: int, req: ColumnFormulaUpdate):
        return service.set_column_formula(column_id, req.formula)

    @app.post("/tables/{table_id}/rows", response_model=Row)
    async def add_row(table_id: int):
        return service.add_row(table_id)

    @app.delete("/rows/{row_id}", response_model=List[AffectedCell])
    async def delete_row(row_id: int):
        return service.delete_row(row_id)

    @app.put("/tables/{table_id}/row-order", response_model=RowOrderResult)
    async def set_row_order(table_id: int, req: RowOrderUpdate):
        return service.set_row_order(table_id, req.row_ids)

    # ── Cells ───────────────────────────────────────────────────────

    @app.patch("/tables/{table_id}/cells", response_model=CellUpdateResult)
    async def update_cell(table_id: int, req: CellUpdate):
        return service.update_cell(table_id, req)

    @app.post("/tables/{table_id}/cells/bulk", response_model=BulkUpdateResult)
    async def bulk_update_cells(table_id: int, req: BulkCellUpdateRequest):
        return service.bulk_update(table_id, req)

    # ── Formulas ────────────────────────────────────────────────────

    @app.get("/tables/{table_id}/formulas", response_model=List[FormulaCell])
    async def list_formula_cells(table_id: int, limit: Optional[int] = None):
        return service.list_formula_cells(table_id, limit)

    @app.post("/tables/{table_id}/formulas/validate", response_model=FormulaValidation)
    async def validate_formula(table_id: int, req: FormulaValidateRequest):
        return service.validate_formula(table_id, req.formula)

    @app.post("/tables/{table_id}/recalc", response_model=RecalcResponse)
    async def recalculate(table_id: int, req: Optional[RecalcRequest] = None):
        return service.recalculate(table_id, req or RecalcRequest())

    @app.get("/tables/{table_id}/recalc", response_model=RecalcStats)
    async def recalc_stats(table_id: int):
        return service.recalc_stats(table_id)

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="127.0.0.1", port=8000, timeout_keep_alive=5)
