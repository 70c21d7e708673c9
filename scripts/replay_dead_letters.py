"""List and replay dead-lettered notification jobs through the ops API.

Replay resets the attempt budget of each job; jobs whose dedupe key already
has a live job are reported and skipped by the server.
"""

import argparse

import httpx


def list_dead_letters(client: httpx.Client, tenant_id: str | None, limit: int) -> list[dict]:
    params = {"limit": limit}
    if tenant_id:
        params["tenant_id"] = tenant_id
    response = client.get("/ops/dead-letters", params=params)
    response.raise_for_status()
    return response.json()


def main() -> None:
    parser = argparse.ArgumentParser(description="Replay dead-lettered notification jobs.")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--api-key", required=True)
    parser.add_argument("--tenant-id", default=None)
    parser.add_argument("--error-kind", default=None, help="Only replay jobs with this last_error_kind")
    parser.add_argument("--job-id", action="append", default=[], help="Replay only these job ids")
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument("--operator", default="cli")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    headers = {"X-API-Key": args.api_key, "X-Operator": args.operator}
    with httpx.Client(base_url=args.base_url, headers=headers, timeout=10.0) as client:
        jobs = list_dead_letters(client, args.tenant_id, args.limit)
        if args.job_id:
            jobs = [job for job in jobs if job["id"] in set(args.job_id)]
        if args.error_kind:
            jobs = [job for job in jobs if job.get("last_error_kind") == args.error_kind]

        replayed = 0
        for job in jobs:
            print(
                f"job_id={job['id']} tenant={job['tenant_id']} channel={job['channel']} "
                f"kind={job.get('last_error_kind')} error={job.get('last_error')}"
            )
            if args.dry_run:
                continue
            response = client.post(f"/ops/dead-letters/{job['id']}/replay")
            if response.is_success:
                replayed += 1
            else:
                print(f"  skipped: HTTP {response.status_code} {response.text}")

    print(f"matched={len(jobs)} replayed={replayed} dry_run={args.dry_run}")


if __name__ == "__main__":
    main()
