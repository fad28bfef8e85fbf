"""
Routes for server management.
"""

from fastapi import APIRouter, Depends, Response, status
from control_api.conductor import Conductor, get_conductor
from control_api.server.schemas import (
    CreateFtpServerRequest,
    CreateNasServerRequest,
    CreateSftpServerRequest,
)

router = APIRouter()


def _dump(model):
    return model.model_dump(mode="json", by_alias=True)


@router.get("/")
async def list_servers(conductor: Conductor = Depends(get_conductor)):
    """
    List all servers (template managed and dynamic) from the current snapshot.
    """
    return [_dump(server) for server in conductor.discovery.snapshot]


@router.get("/check-name/{name}")
async def check_name(name: str, conductor: Conductor = Depends(get_conductor)):
    return {"name": name, "available": conductor.manager.is_server_name_available(name)}


@router.get("/{name}")
async def get_server(name: str, conductor: Conductor = Depends(get_conductor)):
    return _dump(await conductor.discovery.get_server(name))


@router.post("/ftp", status_code=status.HTTP_201_CREATED)
async def create_ftp_server(
    request: CreateFtpServerRequest, conductor: Conductor = Depends(get_conductor)
):
    return _dump(await conductor.manager.create_server("ftp", request))


@router.post("/sftp", status_code=status.HTTP_201_CREATED)
async def create_sftp_server(
    request: CreateSftpServerRequest, conductor: Conductor = Depends(get_conductor)
):
    return _dump(await conductor.manager.create_server("sftp", request))


@router.post("/nas", status_code=status.HTTP_201_CREATED)
async def create_nas_server(
    request: CreateNasServerRequest, conductor: Conductor = Depends(get_conductor)
):
    """
    Create an NFS server exporting a subdirectory (or input/output/backup preset)
    of the shared volume.
    """
    return _dump(await conductor.manager.create_server("nas", request))


@router.delete("/{name}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_server(
    name: str, delete_data: bool = False, conductor: Conductor = Depends(get_conductor)
):
    """
    Delete a dynamic server, deleting a server that doesn't exist succeeds.
    """
    await conductor.manager.delete_server(name, delete_data=delete_data)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{name}/stop")
async def stop_server(name: str, conductor: Conductor = Depends(get_conductor)):
    changed = await conductor.manager.stop_server(name)
    return {"message": f"Server {name} {'stopped' if changed else 'already stopped'}"}


@router.post("/{name}/start")
async def start_server(name: str, conductor: Conductor = Depends(get_conductor)):
    changed = await conductor.manager.start_server(name)
    return {"message": f"Server {name} {'started' if changed else 'already running'}"}


@router.post("/{name}/restart")
async def restart_server(name: str, conductor: Conductor = Depends(get_conductor)):
    deleted = await conductor.manager.restart_server(name)
    return {"message": f"Server {name} restarting ({deleted} pod(s) deleted)"}
