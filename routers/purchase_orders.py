from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile

import crud
from client import DataClient
from dependencies import get_client
from models import ImportReport, PurchaseOrder, PurchaseOrderDraft, ReceivePayload
from xlsx_utils import upload_bytes_to_rows

router = APIRouter(prefix="/purchase-orders")


@router.get("", response_model=list[PurchaseOrder])
def list_purchase_orders_api(
    search: Optional[str] = None,
    status: Optional[str] = None,
    sort: str = "date",
    order: str = "desc",
    client: DataClient = Depends(get_client),
):
    return crud.list_purchase_orders(client, search=search or None, status=status or None, sort=sort, order=order)


@router.post("", response_model=PurchaseOrder, status_code=201)
def create_purchase_order_api(body: PurchaseOrderDraft, client: DataClient = Depends(get_client)):
    return crud.create_purchase_order(client, body)


@router.post("/import", response_model=ImportReport)
async def import_purchase_orders_api(file: UploadFile = File(...), client: DataClient = Depends(get_client)):
    rows, error = upload_bytes_to_rows(await file.read(), file.filename)
    if error:
        raise HTTPException(status_code=400, detail=error)
    return crud.import_purchase_orders(client, rows)


@router.get("/{po_id}", response_model=PurchaseOrder)
def get_purchase_order_api(po_id: str, client: DataClient = Depends(get_client)):
    return crud.get_purchase_order(client, po_id)


@router.delete("/{po_id}", status_code=204)
def delete_purchase_order_api(po_id: str, client: DataClient = Depends(get_client)):
    crud.delete_purchase_order(client, po_id)
    return None


@router.post("/{po_id}/receive", response_model=PurchaseOrder)
def receive_items_api(po_id: str, body: ReceivePayload, client: DataClient = Depends(get_client)):
    return crud.receive_items(client, po_id, body)
