from __future__ import annotations

from fastapi import APIRouter, Body, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from factory_ledger.db import get_db
from factory_ledger.dependencies import get_app_notifier
from factory_ledger.services.backup_service import RestoreReport, create_backup, restore_backup
from factory_ledger.services.notification_service import Notifier

router = APIRouter(prefix='/backup', tags=['backup'])


def _report_to_dict(report: RestoreReport) -> dict:
    return {
        'success': report.success,
        'restored': report.restored,
        'total_restored': report.total_restored,
        'party_balances_created': report.party_balances_created,
        'sequences_reset': report.sequences_reset,
        'errors': [
            {'table': error.table, 'row_id': error.row_id, 'message': error.message} for error in report.errors
        ],
    }


@router.get('')
def export_backup(db: Session = Depends(get_db)):
    return create_backup(db)


@router.post('/restore')
def restore(
    data: dict = Body(...),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_app_notifier),
):
    try:
        report = restore_backup(db, data, notifier=notifier)
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if not report.success:
        db.rollback()
        return JSONResponse(status_code=422, content=_report_to_dict(report))
    db.commit()
    return _report_to_dict(report)
