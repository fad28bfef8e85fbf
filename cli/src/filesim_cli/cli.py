import json
import asyncio
import aiohttp
import typer
from typing import Optional
from rich.console import Console
from rich.table import Table
from rich import box
import datetime

app = typer.Typer(no_args_is_help=True)

DEFAULT_API = "http://127.0.0.1:8000"


def format_date(date_str):
    """
    Format datetime string to a more readable format.
    """
    if not date_str:
        return ""
    dt = datetime.datetime.fromisoformat(date_str.replace("Z", "+00:00"))
    return dt.strftime("%Y-%m-%d %H:%M:%S")


def format_health(server):
    """
    Helper to format table cell for server health.
    """
    if server.get("isHealthy"):
        latency = server.get("latencyMs")
        return f"[green]Healthy ({latency}ms)[/green]" if latency is not None else "[green]Healthy[/green]"
    return f"[red]{server.get('healthMessage') or 'Unhealthy'}[/red]"


def display_servers(servers):
    """
    Render server list in a fancy table.
    """
    console = Console()
    table = Table(title="File simulator servers", box=box.ROUNDED)
    table.add_column("Name", style="cyan")
    table.add_column("Protocol")
    table.add_column("Managed by")
    table.add_column("Phase")
    table.add_column("Ready")
    table.add_column("Endpoint")
    table.add_column("NodePort")
    table.add_column("Directory")
    for server in servers:
        table.add_row(
            server["name"],
            server["protocol"],
            server["managedBy"],
            server["podPhase"],
            "[green]yes[/green]" if server["podReady"] else "[yellow]no[/yellow]",
            f"{server['clusterAddress']}:{server['port']}",
            str(server.get("externalPort") or ""),
            server.get("hostDirectory") or "",
        )
    console.print(table)


def display_status(update):
    """
    Render a status update (health check results).
    """
    console = Console()
    table = Table(
        title=f"Health at {format_date(update['timestamp'])}: "
        f"{update['healthyServers']}/{update['totalServers']} healthy",
        box=box.ROUNDED,
    )
    table.add_column("Name", style="cyan")
    table.add_column("Protocol")
    table.add_column("Phase")
    table.add_column("Health")
    for server in update["servers"]:
        table.add_row(server["name"], server["protocol"], server["podPhase"], format_health(server))
    console.print(table)


async def _fail(resp):
    """
    Print the API's error body and raise.
    """
    print(f"\033[31mError ({resp.status}):\n{await resp.text()}\033[0m")
    resp.raise_for_status()


def list_servers(
    raw_json: bool = typer.Option(False, help="Display raw JSON output"),
    api: str = typer.Option(DEFAULT_API, help="Control API base URL"),
):
    """
    Show all servers.
    """

    async def _list_servers():
        nonlocal raw_json, api
        async with aiohttp.ClientSession(raise_for_status=True) as session:
            async with session.get(f"{api.rstrip('/')}/api/servers/", timeout=30) as resp:
                servers = await resp.json()
                if raw_json:
                    print(json.dumps(servers, indent=2))
                else:
                    display_servers(servers)

    asyncio.run(_list_servers())


def show_status(
    raw_json: bool = typer.Option(False, help="Display raw JSON output"),
    api: str = typer.Option(DEFAULT_API, help="Control API base URL"),
):
    """
    Show the latest health check results.
    """

    async def _show_status():
        nonlocal raw_json, api
        async with aiohttp.ClientSession(raise_for_status=True) as session:
            async with session.get(f"{api.rstrip('/')}/api/status", timeout=30) as resp:
                update = await resp.json()
                if raw_json:
                    print(json.dumps(update, indent=2))
                else:
                    display_status(update)

    asyncio.run(_show_status())


def check_name(
    name: str = typer.Option(..., help="Server name to check"),
    api: str = typer.Option(DEFAULT_API, help="Control API base URL"),
):
    """
    Check whether a server name is still available.
    """

    async def _check_name():
        nonlocal name, api
        async with aiohttp.ClientSession(raise_for_status=True) as session:
            async with session.get(f"{api.rstrip('/')}/api/servers/check-name/{name}") as resp:
                result = await resp.json()
                if result["available"]:
                    print(f"\033[32m{name} is available\033[0m")
                else:
                    print(f"\033[33m{name} is already taken\033[0m")

    asyncio.run(_check_name())


async def _create(api: str, protocol: str, payload: dict):
    async with aiohttp.ClientSession(raise_for_status=False) as session:
        async with session.post(
            f"{api.rstrip('/')}/api/servers/{protocol}",
            json={key: value for key, value in payload.items() if value is not None},
            timeout=120,
        ) as resp:
            if resp.status != 201:
                await _fail(resp)
            print(json.dumps(await resp.json(), indent=2))


def create_ftp(
    name: str = typer.Option(..., help="Server name (lowercase, digits and dashes)"),
    username: str = typer.Option(..., help="FTP username"),
    password: str = typer.Option(..., help="FTP password (min 8 characters)"),
    node_port: Optional[int] = typer.Option(None, help="Explicit NodePort for the control port"),
    directory: Optional[str] = typer.Option(None, help="Subdirectory of the shared volume"),
    passive_port_start: Optional[int] = typer.Option(None, help="First passive mode port"),
    passive_port_end: Optional[int] = typer.Option(None, help="Last passive mode port"),
    api: str = typer.Option(DEFAULT_API, help="Control API base URL"),
):
    """
    Create a dynamic FTP server.
    """
    payload = {
        "name": name,
        "username": username,
        "password": password,
        "nodePort": node_port,
        "directory": directory,
        "passivePortStart": passive_port_start,
        "passivePortEnd": passive_port_end,
    }
    asyncio.run(_create(api, "ftp", payload))


def create_sftp(
    name: str = typer.Option(..., help="Server name (lowercase, digits and dashes)"),
    username: str = typer.Option(..., help="SFTP username"),
    password: str = typer.Option(..., help="SFTP password (min 8 characters)"),
    uid: int = typer.Option(1000, help="User id owning the files"),
    gid: int = typer.Option(1000, help="Group id owning the files"),
    node_port: Optional[int] = typer.Option(None, help="Explicit NodePort"),
    directory: Optional[str] = typer.Option(None, help="Subdirectory of the shared volume"),
    api: str = typer.Option(DEFAULT_API, help="Control API base URL"),
):
    """
    Create a dynamic SFTP server.
    """
    payload = {
        "name": name,
        "username": username,
        "password": password,
        "uid": uid,
        "gid": gid,
        "nodePort": node_port,
        "directory": directory,
    }
    asyncio.run(_create(api, "sftp", payload))


def create_nas(
    name: str = typer.Option(..., help="Server name (lowercase, digits and dashes)"),
    directory: str = typer.Option(..., help="Directory to export, or input/output/backup preset"),
    export_options: Optional[str] = typer.Option(None, help="NFS export options"),
    node_port: Optional[int] = typer.Option(None, help="Explicit NodePort"),
    api: str = typer.Option(DEFAULT_API, help="Control API base URL"),
):
    """
    Create a dynamic NAS (NFS) server.
    """
    payload = {
        "name": name,
        "directory": directory,
        "exportOptions": export_options,
        "nodePort": node_port,
    }
    asyncio.run(_create(api, "nas", payload))


def delete_server(
    name: str = typer.Option(..., help="Name of the server"),
    delete_data: bool = typer.Option(False, help="Also remove the server's data directory"),
    api: str = typer.Option(DEFAULT_API, help="Control API base URL"),
):
    """
    Delete a dynamic server.
    """

    async def _delete_server():
        nonlocal name, delete_data, api
        async with aiohttp.ClientSession(raise_for_status=False) as session:
            async with session.delete(
                f"{api.rstrip('/')}/api/servers/{name}",
                params={"delete_data": str(delete_data).lower()},
            ) as resp:
                if resp.status != 204:
                    await _fail(resp)
                print(f"\033[32mDeleted {name}\033[0m")

    asyncio.run(_delete_server())


async def _lifecycle(api: str, name: str, action: str):
    async with aiohttp.ClientSession(raise_for_status=False) as session:
        async with session.post(f"{api.rstrip('/')}/api/servers/{name}/{action}") as resp:
            if resp.status != 200:
                await _fail(resp)
            print((await resp.json())["message"])


def stop_server(
    name: str = typer.Option(..., help="Name of the server"),
    api: str = typer.Option(DEFAULT_API, help="Control API base URL"),
):
    """
    Stop (scale to zero) a dynamic server.
    """
    asyncio.run(_lifecycle(api, name, "stop"))


def start_server(
    name: str = typer.Option(..., help="Name of the server"),
    api: str = typer.Option(DEFAULT_API, help="Control API base URL"),
):
    asyncio.run(_lifecycle(api, name, "start"))


def restart_server(
    name: str = typer.Option(..., help="Name of the server"),
    api: str = typer.Option(DEFAULT_API, help="Control API base URL"),
):
    asyncio.run(_lifecycle(api, name, "restart"))


def watch_status(
    count: int = typer.Option(0, help="Stop after this many updates (0 = forever)"),
    raw_json: bool = typer.Option(False, help="Display raw JSON output"),
    api: str = typer.Option(DEFAULT_API, help="Control API base URL"),
):
    """
    Stream live health updates over the status websocket.
    """

    async def _watch_status():
        nonlocal count, raw_json, api
        url = api.rstrip("/").replace("http://", "ws://").replace("https://", "wss://")
        received = 0
        async with aiohttp.ClientSession() as session:
            async with session.ws_connect(f"{url}/ws/status", heartbeat=30) as ws:
                async for message in ws:
                    if message.type != aiohttp.WSMsgType.TEXT:
                        break
                    update = json.loads(message.data)
                    if raw_json:
                        print(json.dumps(update))
                    else:
                        display_status(update)
                    received += 1
                    if count and received >= count:
                        break

    asyncio.run(_watch_status())


app.command(name="servers", help="List all servers")(list_servers)
app.command(name="status", help="Show latest health check results")(show_status)
app.command(name="check-name", help="Check whether a server name is available")(check_name)
app.command(name="create-ftp", help="Create a dynamic FTP server")(create_ftp)
app.command(name="create-sftp", help="Create a dynamic SFTP server")(create_sftp)
app.command(name="create-nas", help="Create a dynamic NAS server")(create_nas)
app.command(name="delete", help="Delete a dynamic server")(delete_server)
app.command(name="stop", help="Stop a dynamic server")(stop_server)
app.command(name="start", help="Start a stopped dynamic server")(start_server)
app.command(name="restart", help="Restart a dynamic server's pod")(restart_server)
app.command(name="watch", help="Stream live health updates")(watch_status)
