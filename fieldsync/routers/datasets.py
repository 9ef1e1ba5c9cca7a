# fieldsync/routers/datasets.py
from fastapi import APIRouter, Depends, HTTPException, Request

from ..schemas import DatasetListOut, DatasetOut

router = APIRouter(prefix="/api/datasets", tags=["Datasets"])


def get_services(request: Request):
    return request.app.state.services


@router.get("", response_model=DatasetListOut)
def list_datasets(services=Depends(get_services)):
    with services.lock:
        listing = services.reconciler.list_datasets()
    return DatasetListOut(
        source=listing.source,
        error=listing.error,
        datasets=[
            DatasetOut(id=d.id, name=d.name, featureCount=d.feature_count,
                       updated_at=d.updated_at, source=d.source)
            for d in listing.datasets
        ],
    )


@router.get("/{key}")
def get_dataset(key: str, services=Depends(get_services)):
    with services.lock:
        dataset = services.reconciler.load_dataset(key)
    if dataset is None or dataset.geojson is None:
        raise HTTPException(status_code=404, detail="Dataset not found")
    return dataset.geojson
