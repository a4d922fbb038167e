#!/usr/bin/env python3
"""
Warm-up script — drives a running engine until the universe is loaded.

Does:
  • starts load jobs until the ingestion cursor reports completion
    (or --max-jobs is reached)
  • prints job progress while polling GET /jobs
  • optionally selects a member (id or username) once data is in

Run after the service is up:
  python scripts/warm_universe.py --api-url http://localhost:8000 --select some_username
"""
import argparse
import json
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Optional


@dataclass
class ApiClient:
    base_url: str

    def request(self, method: str, path: str, data: Optional[dict] = None) -> dict:
        url = f"{self.base_url}{path}"
        body = json.dumps(data).encode() if data is not None else None
        req = urllib.request.Request(
            url, data=body, headers={"Content-Type": "application/json"}, method=method
        )
        try:
            with urllib.request.urlopen(req, timeout=10) as resp:
                raw = resp.read()
                return json.loads(raw) if raw else {}
        except urllib.error.HTTPError as e:
            print(f"  HTTP {e.code} on {method} {path}: {e.read().decode()}")
            return {}

    def post(self, path: str, data: Optional[dict] = None) -> dict:
        return self.request("POST", path, data)

    def get(self, path: str):
        return self.request("GET", path)


def wait_for_api(client: ApiClient, retries: int = 15) -> None:
    print(f"Waiting for engine at {client.base_url} ...")
    for _ in range(retries):
        try:
            if client.get("/health").get("status") == "ok":
                print("  Engine is ready!\n")
                return
        except (urllib.error.URLError, ConnectionError):
            pass
        time.sleep(3)
    raise RuntimeError(f"Engine not reachable at {client.base_url} after {retries} retries")


def wait_for_job(client: ApiClient, job_id: int, poll: float) -> dict:
    last = None
    while True:
        jobs = client.get("/jobs") or []
        job = next((j for j in jobs if j.get("id") == job_id), None)
        if job is None:
            return {}
        line = f"  [{job['progress']:5.1f}%] {job['message']}"
        if line != last:
            print(line)
            last = line
        if job["status"] != "running":
            return job
        time.sleep(poll)


def main(api_url: str, max_jobs: int, poll: float, select: Optional[str]) -> None:
    client = ApiClient(api_url)
    wait_for_api(client)

    # ── Load pages until complete ─────────────────────────────────────────
    print("Loading universe...")
    for n in range(1, max_jobs + 1):
        job = client.post("/jobs/load")
        if not job:
            print("  ✗ Could not start a load job — aborting")
            return
        result = wait_for_job(client, job["id"], poll)
        if result.get("status") == "error":
            print(f"  ✗ Job {job['id']} failed: {result.get('message')}")
        universe = client.get("/universe")
        cursor = universe.get("cursor", {})
        print(f"  ✓ run {n}: {universe.get('slots', 0):,} members in view, cursor at user {cursor.get('user_skip', 0):,}")
        if cursor.get("is_complete"):
            break

    # ── Select a member ───────────────────────────────────────────────────
    if select:
        print(f"\nSelecting {select!r}...")
        selection = client.post("/selection/", {"id": select})
        detail = selection.get("detail")
        if detail:
            member = detail["member"]
            print(f"  ✓ {member['username']} (risk {member['risk_level']}, {member['sobriety_days']} days)")
        else:
            print("  ✗ Member not found")

    print("\n" + "=" * 60)
    print("Warm-up complete! Some commands to try:\n")
    print("# Search members:")
    print(f"  curl -s -X POST '{api_url}/search/' \\")
    print("    -H 'Content-Type: application/json' \\")
    print("    -d '{\"text\": \"sam\"}' | python3 -m json.tool\n")
    print("# Current selection:")
    print(f"  curl -s '{api_url}/selection/' | python3 -m json.tool\n")
    print("# Check Jaeger traces: http://localhost:16686")
    print(f"# Check Prometheus metrics: {api_url}/metrics/")
    print("=" * 60)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Warm up a Starfield engine")
    parser.add_argument("--api-url", default="http://localhost:8000", help="Engine base URL")
    parser.add_argument("--max-jobs", type=int, default=20, help="Upper bound on load runs")
    parser.add_argument("--poll", type=float, default=1.0, help="Seconds between job polls")
    parser.add_argument("--select", default=None, help="Member id or username to select afterwards")
    args = parser.parse_args()
    main(args.api_url, args.max_jobs, args.poll, args.select)
