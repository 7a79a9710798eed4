from typing import Literal, Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile

import crud
from client import DataClient
from csv_utils import rows_to_csv_response
from dependencies import get_client
from models import (
    Asset,
    AssetIn,
    AssetUpdate,
    Category,
    CategoryDraft,
    CategoryUpdate,
    DashboardStats,
    ImportReport,
    SubCategory,
    SubCategoryDraft,
    SubCategoryUpdate,
)
from xlsx_utils import rows_to_xlsx_response, upload_bytes_to_rows

router = APIRouter()


@router.get("/dashboard/stats", response_model=DashboardStats)
def dashboard_stats_api(client: DataClient = Depends(get_client)):
    return crud.dashboard_stats(client)


# ---------- categories ----------
@router.get("/categories", response_model=list[Category])
def list_categories_api(client: DataClient = Depends(get_client)):
    return crud.list_categories(client)


@router.post("/categories", response_model=Category, status_code=201)
def create_category_api(body: CategoryDraft, client: DataClient = Depends(get_client)):
    return crud.create_category(client, body)


@router.patch("/categories/{category_id}", response_model=Category)
def update_category_api(category_id: str, body: CategoryUpdate, client: DataClient = Depends(get_client)):
    return crud.update_category(client, category_id, body)


@router.delete("/categories/{category_id}", status_code=204)
def delete_category_api(category_id: str, client: DataClient = Depends(get_client)):
    crud.delete_category(client, category_id)
    return None


@router.post("/sub-categories", response_model=SubCategory, status_code=201)
def create_sub_category_api(body: SubCategoryDraft, client: DataClient = Depends(get_client)):
    return crud.create_sub_category(client, body)


@router.patch("/sub-categories/{sub_category_id}", response_model=SubCategory)
def update_sub_category_api(
    sub_category_id: str,
    body: SubCategoryUpdate,
    client: DataClient = Depends(get_client),
):
    return crud.update_sub_category(client, sub_category_id, body)


@router.delete("/sub-categories/{sub_category_id}", status_code=204)
def delete_sub_category_api(sub_category_id: str, client: DataClient = Depends(get_client)):
    crud.delete_sub_category(client, sub_category_id)
    return None


# ---------- assets ----------
@router.get("/assets", response_model=list[Asset])
def list_assets_api(
    category_id: Optional[str] = None,
    limit: int = 100,
    client: DataClient = Depends(get_client),
):
    if limit < 1:
        limit = 1
    if limit > 500:
        limit = 500
    return crud.list_assets(client, category_id=category_id or None, take=limit)


@router.post("/assets", response_model=Asset, status_code=201)
def create_asset_api(body: AssetIn, client: DataClient = Depends(get_client)):
    return crud.create_asset(client, body)


@router.get("/assets/export")
def export_assets_api(format: Literal["csv", "xlsx"] = "csv", client: DataClient = Depends(get_client)):
    columns, rows = crud.export_asset_rows(client)
    if format == "xlsx":
        return rows_to_xlsx_response(rows, columns=columns, filename="assets_export.xlsx")
    return rows_to_csv_response(rows, columns=columns, filename="assets_export.csv")


@router.post("/assets/import", response_model=ImportReport)
async def import_assets_api(file: UploadFile = File(...), client: DataClient = Depends(get_client)):
    rows, error = upload_bytes_to_rows(await file.read(), file.filename)
    if error:
        raise HTTPException(status_code=400, detail=error)
    if rows and "category" not in rows[0]:
        raise HTTPException(status_code=400, detail="missing required column: category")
    return crud.import_assets(client, rows)


@router.get("/assets/{asset_id}", response_model=Asset)
def get_asset_api(asset_id: str, client: DataClient = Depends(get_client)):
    return crud.get_asset(client, asset_id)


@router.patch("/assets/{asset_id}", response_model=Asset)
def update_asset_api(asset_id: str, body: AssetUpdate, client: DataClient = Depends(get_client)):
    return crud.update_asset(client, asset_id, body)


@router.delete("/assets/{asset_id}", status_code=204)
def delete_asset_api(asset_id: str, client: DataClient = Depends(get_client)):
    crud.delete_asset(client, asset_id)
    return None
