#!/usr/bin/env python3
"""
Walk the whole procurement workflow against a running backend.

Run with backend up: uvicorn app.main:app --reload (from backend dir)

Usage:
  python scripts/create_demo_data.py
  python scripts/create_demo_data.py --base http://localhost:8000

Creates three vendors, structures an RFP from a natural-language request, sends it,
posts one emailed reply per vendor and asks for a comparison. Without SMTP settings
the sends are reported as failures and the RFP still moves to SENT.

Writes: scripts/demo_data.json with the created RFP, vendor and proposal IDs.
"""

import json
import os
import sys
import urllib.error
import urllib.request
from datetime import datetime, timezone
from pathlib import Path

BASE_URL = os.environ.get("API_BASE", "http://localhost:8000").rstrip("/")

VENDORS = [
    {"name": "Acme Computers", "email": "sales@acme-computers.example.com", "contactPerson": "Jane Doe",
     "category": ["IT", "Hardware"]},
    {"name": "Beta Supplies", "email": "bids@beta-supplies.example.com", "contactPerson": "Raj Patel",
     "category": "Hardware"},
    {"name": "Gamma Tech", "email": "quotes@gammatech.example.com", "contactPerson": "Li Wei"},
]

REQUEST = (
    "We need 20 laptops with 16GB RAM and 15 monitors (27-inch) for our new office. "
    "Budget is $50,000 total. Delivery within 30 days. Payment terms net 30, "
    "and we need at least 1 year warranty."
)

REPLIES = [
    "Thank you for the RFP. We can supply 20 laptops at $1,200 each and 15 monitors at $300 each. "
    "Total: $28,500. Delivery in 21 days. Payment net 30. 2 year warranty included.",
    "Happy to quote: laptops and monitors as specified. Total $31,000, delivery in 14 days, "
    "net 45, 1 year warranty.",
    "We are interested in this opportunity and will follow up with pricing next week.",
]


def request(method: str, path: str, body: dict | None = None) -> dict:
    url = f"{BASE_URL}{path}"
    data = None
    if body is not None:
        data = json.dumps(body).encode("utf-8")
    req = urllib.request.Request(
        url,
        data=data,
        method=method,
        headers={"Content-Type": "application/json"} if data else {},
    )
    try:
        with urllib.request.urlopen(req, timeout=300) as resp:
            raw = resp.read().decode("utf-8")
            return json.loads(raw) if raw else {}
    except urllib.error.HTTPError as e:
        err_body = e.read().decode("utf-8") if e.fp else ""
        raise SystemExit(f"HTTP {e.code} {path}: {err_body}")
    except urllib.error.URLError as e:
        raise SystemExit(f"Request failed (is the backend running at {BASE_URL}?): {e.reason}")


def find_or_create_vendor(payload: dict) -> dict:
    """Vendor emails are unique, so re-running the script reuses existing vendors."""
    for v in request("GET", "/vendors"):
        if v["email"] == payload["email"]:
            return v
    return request("POST", "/vendors", body=payload)


def main() -> None:
    global BASE_URL
    if "--help" in sys.argv or "-h" in sys.argv:
        print(__doc__)
        sys.exit(0)
    for i, arg in enumerate(sys.argv):
        if arg == "--base" and i + 1 < len(sys.argv):
            BASE_URL = sys.argv[i + 1].rstrip("/")
            break

    print(f"Using API base: {BASE_URL}")
    health = request("GET", "/health")
    print(f"  AI provider: {health.get('aiProvider')}, email configured: {health.get('emailConfigured')}")

    vendors = [find_or_create_vendor(v) for v in VENDORS]
    print(f"  Vendors: {', '.join(v['name'] for v in vendors)}")

    rfp = request("POST", "/rfps", body={"input": REQUEST})
    print(f"  RFP created: id={rfp['id']} ({rfp['title'][:40]}...) with {len(rfp['items'])} item(s)")

    report = request("POST", f"/rfps/{rfp['id']}/send", body={"vendorIds": [v["id"] for v in vendors]})
    print(f"  Sent: {report['successCount']} ok, {report['failureCount']} failed")

    proposals = []
    for vendor, reply in zip(vendors, REPLIES):
        p = request("POST", "/proposals/inbound", body={
            "rfpId": rfp["id"], "vendorId": vendor["id"], "email": reply, "subject": f"Re: RFP: {rfp['title']}",
        })
        data = p.get("parsedData") or {}
        print(f"  Proposal from {vendor['name']}: total={data.get('totalPrice')} confidence={data.get('confidence')}")
        proposals.append(p)

    comparison = request("POST", f"/rfps/{rfp['id']}/compare")
    rec = comparison.get("recommendation") or {}
    print(f"  Recommendation: {rec.get('vendorName')} - {rec.get('reasoning')}")

    script_dir = Path(__file__).resolve().parent
    manifest = {
        "base_url": BASE_URL,
        "created_at": datetime.now(timezone.utc).isoformat(),
        "rfp": {"id": rfp["id"], "title": rfp["title"]},
        "vendors": [{"id": v["id"], "name": v["name"]} for v in vendors],
        "proposals": [{"id": p["id"], "vendor_id": p["vendorId"]} for p in proposals],
    }
    manifest_path = script_dir / "demo_data.json"
    manifest_path.write_text(json.dumps(manifest, indent=2), encoding="utf-8")
    print(f"  Manifest: {manifest_path}")

    print("\nDone. Next:")
    print(f"  1. GET {BASE_URL}/rfps/{rfp['id']} shows the vendors and proposals ranked by score.")
    print(f"  2. PUT {BASE_URL}/proposals/<id>/status with {{\"status\": \"SELECTED\"}} to pick a winner.")


if __name__ == "__main__":
    main()
