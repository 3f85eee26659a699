from __future__ import annotations

from typing import Any

from fastapi import APIRouter

from app.services import database as db

router = APIRouter(prefix="/api/data-quality", tags=["data-quality"])


def build_report(snapshot: dict[str, Any]) -> dict[str, Any]:
    """Shape the raw snapshot into the report returned by the check endpoint."""
    counts = snapshot["counts"]
    port_errors = [
        {
            "portId": p["id"],
            "portName": p["name"],
            "issue": "missing cluster" if p.get("cluster_id") is None else "invalid cluster",
        }
        for p in snapshot["orphan_ports"]
    ]
    operator_errors = [
        {
            "operatorId": o["id"],
            "operatorName": o["name"],
            "issue": "missing port" if o.get("port_id") is None else "invalid port",
        }
        for o in snapshot["orphan_operators"]
    ]
    return {
        "statistics": {
            "clusters": counts["clusters"],
            "ports": counts["ports"],
            "operators": counts["operators"],
            "pendingProposals": counts["pending_proposals"],
        },
        "portClusterCheck": {
            "errors": port_errors,
            "portsPerCluster": [
                {"clusterId": c["id"], "clusterName": c["name"], "count": c["count"]}
                for c in snapshot["ports_per_cluster"]
            ],
        },
        "operatorPortCheck": {"errors": operator_errors},
        "overallStatus": "fail" if port_errors or operator_errors else "pass",
    }


@router.get("/check")
async def data_quality_check():
    return build_report(await db.data_quality_snapshot())
