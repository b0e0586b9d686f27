"""ServerApi: typed REST calls on top of the RequestGateway."""

from __future__ import annotations

from typing import Any
from urllib.parse import quote

import httpx

from .core.gateway import RequestGateway
from .types import ApiError, ApiRequest, ServerEntity


def _seg(value: str) -> str:
    return quote(str(value), safe="")


def _error_message(response: httpx.Response, default: str) -> tuple[str, dict]:
    try:
        data = response.json()
    except ValueError:
        return f"{default} (HTTP {response.status_code})", {}
    if not isinstance(data, dict):
        return f"{default} (HTTP {response.status_code})", {}
    return data.get("message") or data.get("error") or default, data


class ServerApi:
    """Backend endpoints used by the dashboard.

    The gateway only handles authorization; this layer turns non-2xx
    responses into ``ApiError`` carrying the server's own message.
    """

    def __init__(self, gateway: RequestGateway) -> None:
        self.gateway = gateway

    async def _call(
        self,
        method: str,
        path: str,
        failure: str,
        *,
        params: dict | None = None,
        json: Any = None,
    ) -> Any:
        response = await self.gateway.send(
            ApiRequest(method=method, path=path, params=params, json=json)
        )
        if not response.is_success:
            message, payload = _error_message(response, failure)
            raise ApiError(message, status_code=response.status_code, payload=payload)
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    # -- auth --

    async def current_user(self) -> dict:
        return await self._call("GET", "/auth/me", "Failed to fetch user")

    # -- servers --

    async def list_servers(self) -> list[ServerEntity]:
        data = await self._call("GET", "/servers", "Failed to fetch servers")
        return [ServerEntity.from_payload(s) for s in (data or {}).get("servers") or []]

    async def get_server(self, name: str) -> ServerEntity:
        data = await self._call("GET", f"/servers/{_seg(name)}", "Server not found")
        return ServerEntity.from_payload(data.get("server", data))

    async def create_server(self, name: str, **options: Any) -> ServerEntity:
        body = {"name": name, **{k: v for k, v in options.items() if v is not None}}
        data = await self._call("POST", "/servers", "Failed to create server", json=body)
        return ServerEntity.from_payload(data.get("server", data))

    async def delete_server(self, name: str) -> None:
        await self._call("DELETE", f"/servers/{_seg(name)}", "Failed to delete server")

    async def update_server(self, name: str, changes: dict) -> dict:
        return await self._call(
            "PATCH", f"/servers/{_seg(name)}", "Failed to update server", json=changes,
        )

    async def start_server(self, name: str) -> None:
        await self._call("POST", f"/servers/{_seg(name)}/start", "Failed to start server")

    async def stop_server(self, name: str) -> None:
        await self._call("POST", f"/servers/{_seg(name)}/stop", "Failed to stop server")

    async def scale_server(
        self,
        name: str,
        cpu_limit: str | None = None,
        memory_limit: str | None = None,
        memory: str | None = None,
    ) -> dict:
        body = {
            k: v for k, v in (
                ("cpuLimit", cpu_limit), ("memoryLimit", memory_limit), ("memory", memory),
            ) if v is not None
        }
        return await self._call(
            "POST", f"/servers/{_seg(name)}/scale", "Failed to scale server", json=body,
        )

    async def configure_auto_stop(self, name: str, enabled: bool, idle_minutes: int | None = None) -> dict:
        body: dict[str, Any] = {"enabled": enabled}
        if idle_minutes is not None:
            body["idleTimeoutMinutes"] = idle_minutes
        return await self._call(
            "PUT", f"/servers/{_seg(name)}/auto-stop", "Failed to configure auto-stop", json=body,
        )

    async def get_logs(self, name: str, lines: int = 100) -> list[str]:
        data = await self._call(
            "GET", f"/servers/{_seg(name)}/logs", "Failed to fetch logs",
            params={"lines": lines},
        )
        return [str(line) for line in (data or {}).get("logs") or []]

    async def get_metrics(self, name: str) -> dict:
        data = await self._call("GET", f"/servers/{_seg(name)}/metrics", "Failed to fetch metrics")
        return (data or {}).get("metrics") or {}

    async def get_pod_status(self, name: str) -> dict:
        return await self._call("GET", f"/servers/{_seg(name)}/pod", "Failed to fetch pod status")

    async def execute_command(self, name: str, command: str) -> str:
        data = await self._call(
            "POST", f"/servers/{_seg(name)}/console", "Failed to execute command",
            json={"command": command},
        )
        if isinstance(data, dict):
            return str(data.get("result") or "")
        return str(data or "")

    # -- players --

    async def list_players(self, name: str) -> dict:
        return await self._call("GET", f"/servers/{_seg(name)}/players", "Failed to fetch players")

    async def get_player(self, name: str, player: str) -> dict:
        return await self._call(
            "GET", f"/servers/{_seg(name)}/players/{_seg(player)}", "Failed to fetch player",
        )

    async def whitelist_add(self, name: str, player: str) -> dict:
        return await self._call(
            "POST", f"/servers/{_seg(name)}/whitelist", "Failed to whitelist player",
            json={"player": player},
        )

    async def whitelist_remove(self, name: str, player: str) -> dict:
        return await self._call(
            "DELETE", f"/servers/{_seg(name)}/whitelist/{_seg(player)}",
            "Failed to remove player from whitelist",
        )

    async def op_player(self, name: str, player: str) -> dict:
        return await self._call(
            "POST", f"/servers/{_seg(name)}/ops", "Failed to op player", json={"player": player},
        )

    async def deop_player(self, name: str, player: str) -> dict:
        return await self._call(
            "DELETE", f"/servers/{_seg(name)}/ops/{_seg(player)}", "Failed to deop player",
        )

    async def ban_player(self, name: str, player: str, reason: str | None = None) -> dict:
        body = {"player": player}
        if reason:
            body["reason"] = reason
        return await self._call(
            "POST", f"/servers/{_seg(name)}/bans", "Failed to ban player", json=body,
        )

    async def unban_player(self, name: str, player: str) -> dict:
        return await self._call(
            "DELETE", f"/servers/{_seg(name)}/bans/{_seg(player)}", "Failed to unban player",
        )

    async def kick_player(self, name: str, player: str, reason: str | None = None) -> dict:
        body = {"player": player}
        if reason:
            body["reason"] = reason
        return await self._call(
            "POST", f"/servers/{_seg(name)}/kick", "Failed to kick player", json=body,
        )

    # -- backups --

    async def list_backups(self, name: str) -> list[dict]:
        data = await self._call("GET", f"/servers/{_seg(name)}/backups", "Failed to fetch backups")
        return (data or {}).get("backups") or []

    async def create_backup(
        self,
        name: str,
        backup_name: str | None = None,
        description: str | None = None,
        tags: list[str] | None = None,
    ) -> dict:
        body: dict[str, Any] = {}
        if backup_name:
            body["name"] = backup_name
        if description:
            body["description"] = description
        if tags:
            body["tags"] = tags
        return await self._call(
            "POST", f"/servers/{_seg(name)}/backups", "Failed to create backup", json=body,
        )

    async def delete_backup(self, backup_id: str) -> None:
        await self._call("DELETE", f"/backups/{_seg(backup_id)}", "Failed to delete backup")

    async def restore_backup(self, backup_id: str) -> dict:
        return await self._call(
            "POST", f"/backups/{_seg(backup_id)}/restore", "Failed to restore backup",
        )
