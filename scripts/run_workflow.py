#!/usr/bin/env python3
"""Publish a workflow DSL file and run it once against the in-memory engine.

Usage:
    python scripts/run_workflow.py path/to/workflow.json --params '{"region": "EU"}'

    # Keep state between runs:
    FLOWLOOM_STATE_PATH=/tmp/flowloom.json python scripts/run_workflow.py workflow.json --code demo

Nodes whose type no executor claims echo their input, so any DSL can be
dry-run end to end.

Environment Variables:
    FLOWLOOM_STATE_PATH: JSON file the store snapshots into (optional)
    DAG_MAX_CONCURRENCY: Bound on concurrently running DAG nodes
    LOG_LEVEL: structlog level (defaults to WARNING here)
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def load_dsl(path: str) -> dict:
    with open(path, encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, dict):
        raise ValueError("workflow file must contain a JSON object")
    return data


async def run_workflow(dsl: dict, *, user_id: str, code: str, params: dict, validate_only: bool = False) -> dict:
    """Create or reuse the definition, publish the DSL as a new version and trigger it.

    Returns:
        dict with the execution summary, or the validation issues when
        ``validate_only`` is set
    """
    # Import here to avoid loading config before env vars are set
    from flowloom.service.errors import WorkflowExecutionFailed
    from flowloom.service.runtime import get_runtime

    runtime = get_runtime()

    issues = runtime.definitions.validate(dsl)
    if validate_only:
        return {"status": "validated", "issues": issues}

    definition = next(
        (d for d in runtime.store.definitions.values() if d.workflow_code == code),
        None,
    )
    if definition is None:
        definition = runtime.definitions.create_definition(
            user_id, code, dsl.get("name") or code, mode=str(dsl.get("mode") or "LINEAR")
        )
        print(f"Created workflow definition {code} (id: {definition.id})")

    version_code = f"v{len(runtime.store.list_workflow_versions(definition.id)) + 1}"
    version = runtime.definitions.create_version(user_id, definition.id, version_code, dsl, publish=True)
    print(f"Published version {version_code} (fingerprint: {version.dsl_fingerprint[:12]})")

    try:
        execution = await runtime.workflow.trigger(
            user_id,
            {"workflow_definition_id": definition.id, "param_snapshot": {"params": params}},
        )
    except WorkflowExecutionFailed as exc:
        execution = runtime.workflow.get_execution(user_id, exc.execution_id)

    replay = runtime.workflow.replay(execution.id, user_id)
    return {
        "status": execution.status,
        "execution_id": execution.id,
        "failure_code": execution.failure_code,
        "error": execution.error_message,
        "nodes": [
            {"node": row.node_id, "status": row.status, "durationMs": row.duration_ms}
            for row in runtime.workflow.list_node_executions(user_id, execution.id)
        ],
        "stats": replay.get("stats"),
        "issues": issues,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Run a workflow DSL file with flowloom",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("dsl", help="Path to a workflow DSL JSON file")
    parser.add_argument(
        "--code",
        default=None,
        help="Workflow code (defaults to the file name without extension)",
    )
    parser.add_argument(
        "--user",
        default=os.environ.get("FLOWLOOM_USER", "cli"),
        help="Trigger user id (or set FLOWLOOM_USER env var)",
    )
    parser.add_argument(
        "--params",
        default="{}",
        help="JSON object passed as caller params",
    )
    parser.add_argument(
        "--validate-only",
        action="store_true",
        help="Report DSL issues without publishing or running",
    )

    args = parser.parse_args()

    try:
        params = json.loads(args.params)
    except json.JSONDecodeError as e:
        print(f"Error: --params is not valid JSON: {e}")
        sys.exit(1)
    if not isinstance(params, dict):
        print("Error: --params must be a JSON object")
        sys.exit(1)

    os.environ.setdefault("LOG_LEVEL", "WARNING")
    os.environ.setdefault("FLOWLOOM_STORE", "memory")

    try:
        dsl = load_dsl(args.dsl)
        code = args.code or Path(args.dsl).stem
        result = asyncio.run(
            run_workflow(dsl, user_id=args.user, code=code, params=params, validate_only=args.validate_only)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    for issue in result["issues"]:
        print(f"  [{issue.get('severity')}] {issue.get('code')}: {issue.get('message')}")

    if result["status"] == "validated":
        errors = [i for i in result["issues"] if i.get("severity") == "ERROR"]
        print("\nDSL is valid." if not errors else f"\nDSL has {len(errors)} error(s).")
        sys.exit(1 if errors else 0)

    print(f"\nExecution {result['execution_id']} finished: {result['status']}")
    for node in result["nodes"]:
        print(f"  {node['node']:<24} {node['status']:<8} {node['durationMs']}ms")
    if result["error"]:
        print(f"  Failure: {result['failure_code']} - {result['error']}")
    if result["stats"]:
        print(json.dumps(result["stats"], indent=2))
    sys.exit(0 if result["status"] == "SUCCESS" else 2)


if __name__ == "__main__":
    main()
