import io
from functools import lru_cache

from fastapi import APIRouter, Request, Depends, UploadFile, File as FastAPIFile, Form, HTTPException
from fastapi.responses import StreamingResponse

from app.core.config import get_settings
from app.models.database import SessionLocal
from app.schemas.node import NodeOut
from app.services.drive import DriveService
from app.storage.blob_store import build_blob_store
from app.storage.repository import MetadataRepository

router = APIRouter()


# --- the drive service, built once per process ---
@lru_cache
def get_drive() -> DriveService:
    settings = get_settings()
    return DriveService(MetadataRepository(SessionLocal), build_blob_store(settings), settings)


# --- helper: get current logged in user id from cookie ---
def get_current_user_id(request: Request) -> int | None:
    user_id = request.cookies.get("user_id")
    if not user_id:
        return None
    try:
        return int(user_id)
    except ValueError:
        return None


def require_user_id(request: Request) -> int:
    user_id = get_current_user_id(request)
    if user_id is None:
        raise HTTPException(status_code=401, detail="Not logged in")
    return user_id


def _optional_id(raw: str | None) -> int | None:
    # multipart forms send "" for an empty parent field
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail="parent_id must be an integer") from None


# --- upload a single file ---
@router.post("/upload", response_model=NodeOut, status_code=201)
async def upload_file(
    upload: UploadFile = FastAPIFile(...),
    parent_id: str | None = Form(None),
    user_id: int = Depends(require_user_id),
    drive: DriveService = Depends(get_drive),
):
    content = await upload.read()
    return await drive.upload_file(user_id, upload.filename or "", content, _optional_id(parent_id))


# --- upload a folder as a zip archive ---
@router.post("/upload-folder", response_model=list[NodeOut], status_code=201)
async def upload_folder(
    archive: UploadFile = FastAPIFile(...),
    parent_id: str | None = Form(None),
    user_id: int = Depends(require_user_id),
    drive: DriveService = Depends(get_drive),
):
    content = await archive.read()
    return await drive.upload_folder(user_id, content, _optional_id(parent_id))


@router.post("/folders", response_model=NodeOut, status_code=201)
async def create_folder(
    name: str = Form(...),
    parent_id: str | None = Form(None),
    user_id: int = Depends(require_user_id),
    drive: DriveService = Depends(get_drive),
):
    return await drive.create_folder(user_id, name, _optional_id(parent_id))


# --- every file and folder of the user, newest first ---
@router.get("/files", response_model=list[NodeOut])
async def list_files(
    user_id: int = Depends(require_user_id),
    drive: DriveService = Depends(get_drive),
):
    return await drive.list_user_files(user_id)


@router.get("/folders", response_model=list[NodeOut])
async def list_root(
    user_id: int = Depends(require_user_id),
    drive: DriveService = Depends(get_drive),
):
    return await drive.list_folder_contents(user_id)


@router.get("/folders/{folder_id}", response_model=list[NodeOut])
async def list_folder(
    folder_id: int,
    user_id: int = Depends(require_user_id),
    drive: DriveService = Depends(get_drive),
):
    return await drive.list_folder_contents(user_id, folder_id)


# --- download a file ---
@router.get("/download/{file_id}")
async def download_file(
    file_id: int,
    user_id: int = Depends(require_user_id),
    drive: DriveService = Depends(get_drive),
):
    node, data, content_type = await drive.download_file(file_id, user_id)
    return StreamingResponse(
        io.BytesIO(data),
        media_type=content_type,
        headers={
            "Content-Disposition": f'attachment; filename="{node.name}"'
        },
    )


# --- download a folder as a zip archive, streamed ---
@router.get("/download-folder/{folder_id}")
async def download_folder(
    folder_id: int,
    user_id: int = Depends(require_user_id),
    drive: DriveService = Depends(get_drive),
):
    folder, stream = await drive.download_folder(folder_id, user_id)
    return StreamingResponse(
        stream,
        media_type="application/zip",
        headers={
            "Content-Disposition": f'attachment; filename="{folder.name}.zip"'
        },
    )


# --- delete a file or a folder with everything in it ---
@router.post("/delete/{node_id}", response_model=list[NodeOut])
async def delete_node(
    node_id: int,
    user_id: int = Depends(require_user_id),
    drive: DriveService = Depends(get_drive),
):
    return await drive.delete_node(node_id, user_id)


# --- re-run size aggregation for a node and its ancestors ---
@router.post("/refresh-sizes/{node_id}", response_model=NodeOut)
async def refresh_sizes(
    node_id: int,
    user_id: int = Depends(require_user_id),
    drive: DriveService = Depends(get_drive),
):
    return await drive.refresh_sizes(node_id, user_id)
