"""External timer for the rollout controller.

The controller never schedules its own work; this loop asks it to evaluate
every active deployment once per poll. Calls that arrive before a
deployment's increment interval has elapsed come back as ``not_due``.
"""
import os
import sys
import time
from typing import Dict, List

import requests

# Configuration
API_URL = os.environ.get("ROLLOUT_API_URL", "http://localhost:8000/api/v1")
POLL_INTERVAL = int(os.environ.get("ROLLOUT_POLL_SECONDS", "30"))
REQUEST_TIMEOUT = float(os.environ.get("ROLLOUT_REQUEST_TIMEOUT", "30"))


def list_deployments(session: requests.Session, status: str) -> List[Dict]:
    response = session.get(
        f"{API_URL}/deployments",
        params={"status": status, "limit": 500},
        timeout=REQUEST_TIMEOUT,
    )
    response.raise_for_status()
    return response.json()


def progress(session: requests.Session, deployment_id: int) -> Dict:
    response = session.post(f"{API_URL}/deployments/{deployment_id}/progress", timeout=REQUEST_TIMEOUT)
    response.raise_for_status()
    return response.json()


def check_approval_timeout(session: requests.Session, deployment_id: int) -> Dict:
    response = session.post(
        f"{API_URL}/deployments/{deployment_id}/approval-timeout",
        timeout=REQUEST_TIMEOUT,
    )
    response.raise_for_status()
    return response.json()


def run_once(session: requests.Session) -> Dict[int, str]:
    """Drive every progressing deployment one tick; returns outcome per id."""
    outcomes: Dict[int, str] = {}

    for deployment in list_deployments(session, "progressing"):
        try:
            result = progress(session, deployment["id"])
        except requests.HTTPError as e:
            # 409: state changed between list and progress (manual pause, promote...)
            print(f"  [!] progress of {deployment['id']} rejected: {e}")
            outcomes[deployment["id"]] = "rejected"
            continue
        outcomes[deployment["id"]] = result["outcome"]
        print(
            f"  [-] {deployment['name']}: {result['outcome']} "
            f"at {result['deployment']['current_canary_percent']}%"
        )

    for deployment in list_deployments(session, "paused"):
        if not deployment.get("awaiting_approval"):
            continue
        result = check_approval_timeout(session, deployment["id"])
        if result["rolled_back"]:
            print(f"  [!!] {deployment['name']}: approval timed out, rolling back")
            outcomes[deployment["id"]] = "approval_timeout"

    return outcomes


def run_driver():
    print(f"Driving canary rollouts at {API_URL} every {POLL_INTERVAL}s...")
    session = requests.Session()

    while True:
        try:
            run_once(session)
        except requests.RequestException as e:
            print(f"Warning: rollout API unavailable: {e}")
        time.sleep(POLL_INTERVAL)


if __name__ == "__main__":
    try:
        run_driver()
    except KeyboardInterrupt:
        print("\nStopping driver. Deployments keep their current traffic split.")
        sys.exit(0)
