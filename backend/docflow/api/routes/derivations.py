"""Derivation API routes - thin adapter over DocumentDerivationService."""

import logging
from typing import List

from fastapi import APIRouter, HTTPException

from docflow.core.errors import (
    FatalPersistenceError, SourceNotFoundError, TransientPersistenceError, ValidationError,
)
from docflow.db.session import DbSession
from docflow.models.sales_order import SalesOrder
from docflow.schemas.derivation import (
    DerivationRequest, DerivationResponse, DerivedDocumentResponse, LedgerBalanceResponse,
    LpoLineQuantityResponse, WarningResponse,
)
from docflow.services.derivation_service import DocumentDerivationService
from docflow.services.fulfillment_ledger import FulfillmentLedgerService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/", response_model=DerivationResponse, status_code=201)
def derive_documents(request: DerivationRequest, db: DbSession):
    """Derive and persist invoice or purchase order documents."""
    service = DocumentDerivationService(db)
    try:
        result = service.derive(
            source_refs=[ref.to_ref() for ref in request.source_refs],
            target_type=request.target_type,
            group_by=request.group_by,
            selected_line_ids=request.selected_line_ids,
            invoice_type=request.invoice_type,
            supplier_id=request.supplier_id,
            created_by=request.created_by,
        )
    except SourceNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except FatalPersistenceError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except TransientPersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))

    return DerivationResponse(
        documents=[DerivedDocumentResponse.from_document(doc) for doc in result.documents],
        warnings=[WarningResponse.from_warning(w) for w in result.warnings],
    )


@router.get("/ledger/sales-order-items/{item_id}", response_model=LedgerBalanceResponse)
def get_sales_order_item_balance(item_id: int, db: DbSession):
    """Delivered/invoiced/purchased balance of one sales order line."""
    balance = FulfillmentLedgerService(db).sales_order_item_balance(item_id)
    if balance is None:
        raise HTTPException(status_code=404, detail="Sales order item not found")
    return LedgerBalanceResponse.from_balance(balance)


@router.get("/ledger/sales-orders/{order_id}", response_model=List[LedgerBalanceResponse])
def get_sales_order_balances(order_id: int, db: DbSession):
    """Balances of every line of a sales order."""
    if db.get(SalesOrder, order_id) is None:
        raise HTTPException(status_code=404, detail="Sales order not found")
    balances = FulfillmentLedgerService(db).sales_order_balances(order_id)
    return [LedgerBalanceResponse.from_balance(b) for b in balances]


@router.get(
    "/ledger/lpos/{lpo_id}/actual-quantities", response_model=List[LpoLineQuantityResponse]
)
def get_lpo_actual_quantities(lpo_id: int, db: DbSession):
    """Delivered (or else invoiced) quantities behind each line of an LPO."""
    quantities = FulfillmentLedgerService(db).lpo_actual_quantities(lpo_id)
    if quantities is None:
        raise HTTPException(status_code=404, detail="Supplier LPO not found")
    return [LpoLineQuantityResponse.from_quantity(q) for q in quantities]
