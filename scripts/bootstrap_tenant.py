#!/usr/bin/env python3
"""Register a tenant and optionally load workflow definitions for it.

Usage:
    python scripts/bootstrap_tenant.py --tenant-id acme --name "Acme Corp"
    python scripts/bootstrap_tenant.py --tenant-id acme --name "Acme Corp" \
        --workflows workflows.json --submission intake.json

``workflows.json`` holds a list of workflow objects with ``id``, ``name``,
``nodes`` and optional ``edges``, ``variables``, ``settings``.
``--submission`` queues the given JSON object as a pending submission.

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_tenant(
    tenant_id: str,
    name: str,
    *,
    workflows_path: str | None = None,
    submission_path: str | None = None,
    dry_run: bool = False,
) -> dict:
    # Import here to avoid loading config before env vars are set
    from nodecascade.service.runtime import get_runtime
    from nodecascade.storage.models import Submission, Tenant, WorkflowRecord

    runtime = get_runtime()
    workflows = json.loads(Path(workflows_path).read_text()) if workflows_path else []
    if not isinstance(workflows, list):
        raise ValueError("workflow file must contain a JSON list")
    raw_submission = json.loads(Path(submission_path).read_text()) if submission_path else None

    if dry_run:
        print(f"[DRY RUN] Would register tenant {tenant_id} with {len(workflows)} workflow(s)")
        return {"tenant_id": tenant_id, "status": "dry_run"}

    existing = runtime.store.get_tenant(tenant_id)
    runtime.store.upsert_tenant(Tenant(id=tenant_id, name=name))
    for raw in workflows:
        runtime.store.save_workflow(
            WorkflowRecord(
                id=raw["id"],
                name=raw.get("name") or raw["id"],
                nodes=raw.get("nodes") or [],
                edges=raw.get("edges") or [],
                variables=raw.get("variables") or [],
                settings=raw.get("settings") or {},
                parent_id=raw.get("parent_id"),
            )
        )
        print(f"Saved workflow {raw['id']}")

    result = {
        "tenant_id": tenant_id,
        "status": "updated" if existing else "created",
        "workflows": len(workflows),
    }
    if raw_submission is not None:
        submission = runtime.store.create_submission(Submission.new(tenant_id, raw_submission))
        result["submission_id"] = submission.id
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Register a tenant for NodeCascade",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--tenant-id", required=True, help="Tenant identifier")
    parser.add_argument("--name", required=True, help="Display name")
    parser.add_argument("--workflows", help="Path to a JSON list of workflow definitions")
    parser.add_argument("--submission", help="Path to a JSON object to queue as a submission")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/nodecascade-bootstrap"
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_tenant(
            args.tenant_id,
            args.name,
            workflows_path=args.workflows,
            submission_path=args.submission,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"\nTenant {result['tenant_id']}: {result['status']}")
    if result.get("submission_id"):
        print(f"  Submission ID: {result['submission_id']}")


if __name__ == "__main__":
    main()
