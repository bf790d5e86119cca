import os
import requests
from typing import Any, Dict, Optional


class ApiClient:
    def __init__(self, base_url: Optional[str] = None, timeout: float = 30.0) -> None:
        self.base_url = base_url or os.environ.get("RAILOPS_API_BASE", "http://localhost:8000")
        self.timeout = timeout

    def _post(self, path: str, json: Dict[str, Any] | None = None) -> Dict[str, Any]:
        r = requests.post(f"{self.base_url}{path}", json=json, timeout=self.timeout)
        r.raise_for_status()
        return r.json()

    def _get(self, path: str, params: Dict[str, Any] | None = None) -> Dict[str, Any]:
        r = requests.get(f"{self.base_url}{path}", params=params, timeout=self.timeout)
        r.raise_for_status()
        return r.json()

    @staticmethod
    def _version(expected_version: Optional[int]) -> Dict[str, Any]:
        return {"expected_version": expected_version} if expected_version is not None else {}

    # Snapshot
    def snapshot(self) -> Dict[str, Any]:
        return self._get("/snapshot")

    def summary(self) -> Dict[str, Any]:
        return self._get("/summary")

    def trains(self, type: str = "all", status: str = "all", search: str = "") -> Dict[str, Any]:
        return self._get("/trains", params={"type": type, "status": status, "search": search})

    def get(self, kind: str, entity_id: str) -> Dict[str, Any]:
        return self._get(f"/{kind}/{entity_id}")

    # Trains
    def proceed(self, number: str, expected_version: Optional[int] = None) -> Dict[str, Any]:
        return self._post(f"/trains/{number}/proceed", json=self._version(expected_version))

    def hold(self, number: str, expected_version: Optional[int] = None) -> Dict[str, Any]:
        return self._post(f"/trains/{number}/hold", json=self._version(expected_version))

    def reroute(self, number: str, delay_minutes: int, destination: Optional[str] = None, expected_version: Optional[int] = None) -> Dict[str, Any]:
        body = {"delay_minutes": int(delay_minutes), "destination": destination, **self._version(expected_version)}
        return self._post(f"/trains/{number}/reroute", json=body)

    def set_maintenance(self, number: str, expected_version: Optional[int] = None) -> Dict[str, Any]:
        return self._post(f"/trains/{number}/maintenance", json=self._version(expected_version))

    def move(self, number: str, location: str, expected_version: Optional[int] = None) -> Dict[str, Any]:
        return self._post(f"/trains/{number}/move", json={"location": location, **self._version(expected_version)})

    # Signals / platforms
    def change_signal(self, code: str, state: str, expected_version: Optional[int] = None) -> Dict[str, Any]:
        return self._post(f"/signals/{code}/state", json={"state": state, **self._version(expected_version)})

    def assign_platform(self, key: str, train: str, arrival: str, departure: str) -> Dict[str, Any]:
        return self._post(f"/platforms/{key}/assign", json={"train": train, "arrival": arrival, "departure": departure})

    def depart_platform(self, key: str) -> Dict[str, Any]:
        return self._post(f"/platforms/{key}/depart", json={})
