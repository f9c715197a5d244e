from fastapi import APIRouter, Depends, HTTPException, Path
from fastapi.responses import FileResponse

from app.api import deps
from app.services.support_hub import SupportHub

router = APIRouter()


@router.get("/{folder}/{file_name}")
async def get_attachment(
    folder: str = Path(..., title="Storage folder"),
    file_name: str = Path(..., title="File Name"),
    hub: SupportHub = Depends(deps.get_hub),
):
    """
    Serves attachments written by the storage service. Keys are random UUIDs,
    so the URL itself is the capability.
    """
    target = hub.storage.local_path(f"{folder}/{file_name}")
    if target is None:
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(target)
