from fastapi import APIRouter, Depends

import crud
from client import DataClient
from dependencies import get_client
from models import IssueReport, MaintenanceRecord, ResolveRequest

router = APIRouter(prefix="/maintenance")


@router.get("", response_model=list[MaintenanceRecord])
def list_maintenance_api(client: DataClient = Depends(get_client)):
    return crud.list_maintenance_records(client)


@router.post("", response_model=MaintenanceRecord, status_code=201)
def report_issue_api(body: IssueReport, client: DataClient = Depends(get_client)):
    return crud.report_issue(client, body)


@router.post("/{record_id}/resolve", response_model=MaintenanceRecord)
def resolve_api(record_id: str, body: ResolveRequest, client: DataClient = Depends(get_client)):
    return crud.resolve_maintenance_record(client, record_id, body.cost)
