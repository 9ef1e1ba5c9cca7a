# fieldsync/routers/uploads.py
import json
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile

from ..errors import CacheError
from ..mapping import AttributeMapping, MappingDecision, StaticMappingProvider
from ..schemas import BatchSummaryOut, FileResultOut

router = APIRouter(prefix="/api", tags=["Uploads"])


def get_services(request: Request):
    return request.app.state.services


def _parse_mapping(raw: Optional[str]) -> Optional[AttributeMapping]:
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail="mapping must be a JSON object")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="mapping must be a JSON object")
    return AttributeMapping.from_dict(data)


def _summary_out(summary) -> BatchSummaryOut:
    return BatchSummaryOut(
        total=summary.total,
        processed=summary.processed,
        succeeded=summary.succeeded,
        cloud_stored=summary.cloud_stored,
        created=sorted(summary.created),
        updated=sorted(summary.updated),
        halted=summary.halted,
        message=summary.message,
        files=[FileResultOut(**vars(r)) for r in summary.files],
    )


@router.post("/uploads", response_model=BatchSummaryOut)
def upload_files(
    files: List[UploadFile] = File(...),
    mapping: Optional[str] = Form(None),
    remember: bool = Form(False),
    services=Depends(get_services),
):
    chosen = _parse_mapping(mapping)
    decision = MappingDecision(mapping=chosen, remember=remember) if chosen else None
    payload = [(f.filename or "dataset", f.file.read()) for f in files]

    with services.lock:
        services.mapper.provider = StaticMappingProvider(decision)
        services.mapper.explicit = decision
        try:
            summary = services.pipeline.process_files(payload)
        finally:
            services.mapper.provider = None
            services.mapper.explicit = None

    if summary.halted:
        cancelled = summary.cancellation
        raise HTTPException(status_code=409, detail={
            "message": str(cancelled),
            "observed_keys": cancelled.observed_keys,
            "samples": cancelled.samples,
            "summary": _summary_out(summary).model_dump(mode="json"),
        })
    return _summary_out(summary)


@router.get("/mapping")
def get_mapping(services=Depends(get_services)):
    remembered = services.cache.load_mapping()
    return {"mapping": remembered.to_dict() if remembered else None, "remember": remembered is not None}


@router.delete("/mapping")
def forget_mapping(services=Depends(get_services)):
    try:
        services.cache.clear_mapping()
    except CacheError as e:
        raise HTTPException(status_code=500, detail=str(e))
    services.context.session_mapping = None
    return {"status": "cleared"}
