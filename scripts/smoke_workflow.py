#!/usr/bin/env python3
"""
Smoke test against a running backend.

Submits preferences, starts a small workflow, polls its status until it
finishes and downloads the first episode PDF.

    uvicorn serial_story.app:app --app-dir serial_story_backend --port 8000
    python scripts/smoke_workflow.py --stories 2
"""
import argparse
import sys
import time

import httpx

PREFERENCES = {
    "preferences": {
        "genres": ["Fantasy", "Adventure"],
        "themes": ["Friendship", "Coming of Age"],
        "artStyle": "Modern",
        "targetAudience": "Teens",
        "contentRating": "PG",
    },
    "insights": {"recommendations": []},
}


def check_health(client: httpx.Client) -> bool:
    try:
        data = client.get("/health").json()
    except httpx.HTTPError as e:
        print(f"❌ Backend connection failed: {e}")
        return False
    print(f"✅ Backend is running (event bus: {data.get('event_bus')})")
    print(f"✅ API keys configured: {data.get('has_keys', False)}")
    return bool(data.get("has_keys"))


def run_workflow(client: httpx.Client, stories: int, max_wait: int) -> bool:
    response = client.put("/preferences", json=PREFERENCES)
    if response.status_code != 200:
        print(f"❌ Saving preferences failed: {response.status_code} {response.text}")
        return False

    response = client.post("/workflow/start", json={"numberOfStories": stories})
    if response.status_code != 202:
        print(f"❌ Workflow start failed: {response.status_code} {response.text}")
        return False
    ack = response.json()
    request_id = ack["requestId"]
    print(f"✅ Workflow {ack['workflowId']} started (request {request_id})")
    print(f"   Estimated completion: {ack['estimatedCompletionTime']}")

    start_time = time.time()
    while time.time() - start_time < max_wait:
        status = client.get(f"/status/{request_id}").json()
        progress = status.get("progress") or {}
        print(f"   {status['status']}: {progress.get('currentStep', '-')}")

        if status["status"] == "FAILED":
            print(f"❌ Workflow failed: {status.get('error')}")
            return False
        if progress.get("completedSteps") == progress.get("totalSteps") and status["status"] == "COMPLETED":
            return download_first_episode(client, status["result"]["storyIds"][0])
        time.sleep(5)

    print("⏰ Workflow timeout - taking longer than expected")
    return False


def download_first_episode(client: httpx.Client, story_id: str) -> bool:
    episodes = client.get(f"/stories/{story_id}").json()["episodes"]
    if not episodes:
        print(f"❌ Story {story_id} has no episodes")
        return False
    episode_id = episodes[0]["episodeId"]
    pdf = client.get(f"/episodes/{episode_id}/download")
    if pdf.status_code != 200:
        print(f"❌ Episode download failed: {pdf.status_code} {pdf.text}")
        return False
    filename = f"episode-{episode_id}.pdf"
    with open(filename, "wb") as f:
        f.write(pdf.content)
    print(f"✅ Episode PDF saved to {filename} ({len(pdf.content)} bytes)")
    return True


def main():
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--url", default="http://localhost:8000")
    parser.add_argument("--user", default="smoke-test-user")
    parser.add_argument("--stories", type=int, default=1)
    parser.add_argument("--max-wait", type=int, default=600)
    args = parser.parse_args()

    print("🚀 Serial story smoke test")
    print("=" * 50)
    with httpx.Client(base_url=args.url, headers={"X-User-Id": args.user}, timeout=30) as client:
        if not check_health(client):
            print("\n❌ Backend is not properly configured!")
            return 1
        if not run_workflow(client, args.stories, args.max_wait):
            print("\n⚠️  Workflow had issues; check the backend logs")
            return 1
    print("\n🎉 Workflow completed end to end")
    return 0


if __name__ == "__main__":
    sys.exit(main())
