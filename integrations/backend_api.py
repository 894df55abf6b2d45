"""Client for the audit REST API.

Every response is wrapped as {"data": ...}; the client unwraps it and turns
HTTP failures into BackendRejected (the server answered) or
BackendUnavailable (it did not).
"""
from typing import Optional
import httpx
from audit.errors import BackendRejected, BackendUnavailable
from audit.logger import log_event
from audit.models import StoredEvidence

class BackendApiClient:
    def __init__(self, base_url, token=None, *, timeout=30.0, transport=None):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.client = httpx.AsyncClient(base_url=base_url.rstrip("/"), headers=headers,
                                        timeout=timeout, transport=transport)

    async def aclose(self):
        await self.client.aclose()

    async def _request(self, method, path, **kwargs):
        try:
            response = await self.client.request(method, path, **kwargs)
            response.raise_for_status()

        except httpx.HTTPStatusError as e:
            message = _error_message(e.response)
            log_event("WARNING", "backend_rejected", node="backend_api",
                      meta={"method": method, "path": path,
                            "status": e.response.status_code, "message": message})
            raise BackendRejected(e.response.status_code, message) from e

        except httpx.RequestError as e:
            log_event("WARNING", "backend_unavailable", node="backend_api",
                      meta={"method": method, "path": path, "error": str(e)})
            raise BackendUnavailable(f"{method} {path}: {e}") from e

        log_event("TRACE", "backend_call", node="backend_api",
                  meta={"method": method, "path": path, "status": response.status_code})

        if not response.content:
            return None
        body = response.json()
        return body.get("data") if isinstance(body, dict) and "data" in body else body

    async def start_audit(self, unit_id, template_id, latitude=None, longitude=None) -> dict:
        payload = {"unidadeId": unit_id, "templateId": template_id}
        if latitude is not None and longitude is not None:
            payload.update(latitude=latitude, longitude=longitude)
        return await self._request("POST", "/auditorias", json=payload)

    async def get_audit(self, session_id) -> dict:
        return await self._request("GET", f"/auditorias/{session_id}")

    async def answer_item(self, session_id, item_id, answer, extras: Optional[dict] = None):
        payload = {"resposta": answer, **(extras or {})}
        return await self._request("PUT", f"/auditorias/{session_id}/itens/{item_id}", json=payload)

    async def add_photo(self, session_id, item_id, image: bytes,
                        mime_type="image/jpeg") -> StoredEvidence:
        files = {"file": ("foto.jpg", image, mime_type)}
        data = await self._request("POST", f"/auditorias/{session_id}/itens/{item_id}/fotos",
                                   files=files)
        return StoredEvidence(id=data["id"], url=data.get("url") or "")

    async def remove_photo(self, session_id, item_id, photo_id):
        await self._request("DELETE", f"/auditorias/{session_id}/itens/{item_id}/fotos/{photo_id}")

    async def update_photo_analysis(self, session_id, item_id, photo_id, analysis: str):
        await self._request("PUT", f"/auditorias/{session_id}/itens/{item_id}/fotos/{photo_id}/analise",
                            json={"analiseIa": analysis})

    async def finalize_audit(self, session_id, general_observations=None,
                             latitude=None, longitude=None) -> dict:
        payload = {"observacoesGerais": general_observations}
        if latitude is not None and longitude is not None:
            payload.update(latitude=latitude, longitude=longitude)
        return await self._request("PUT", f"/auditorias/{session_id}/finalizar", json=payload)

    async def reopen_audit(self, session_id) -> dict:
        return await self._request("PUT", f"/auditorias/{session_id}/reabrir")

    async def list_non_conforming(self, session_id) -> list:
        return await self._request("GET", f"/auditorias/{session_id}/nao-conformes")

def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase

    message = body.get("message") if isinstance(body, dict) else None
    if isinstance(message, list):
        return "; ".join(str(m) for m in message)
    return message or response.reason_phrase
