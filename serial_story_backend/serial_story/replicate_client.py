import time, httpx, asyncio, logging
from typing import Any, Dict, Tuple
from .settings import REPLICATE_API_TOKEN, REPLICATE_POLL_INTERVAL_MS, REPLICATE_POLL_TIMEOUT_S, REPLICATE_MODEL_VERSION

logger = logging.getLogger(__name__)

API_BASE = "https://api.replicate.com/v1"
DEFAULT_MODEL = "black-forest-labs/flux-schnell"
# Manga panels are portrait
PANEL_ASPECT_RATIO = "3:4"
FINISHED = ("succeeded", "failed", "canceled")


def _auth():
    if not REPLICATE_API_TOKEN:
        raise RuntimeError("REPLICATE_API_TOKEN is not set; please configure your .env")
    return {"Authorization": f"Bearer {REPLICATE_API_TOKEN}", "Content-Type": "application/json"}


def prediction_target(selector: str) -> Tuple[str, Dict[str, Any]]:
    """
    Map a model selector to (endpoint, extra body).

    ``owner/name`` (optionally ``:alias``) runs the model's current deployment;
    anything else is taken as a version hash for the generic endpoint.
    """
    owner_name = selector.partition(":")[0]
    if "/" in owner_name:
        return f"{API_BASE}/models/{owner_name}/predictions", {}
    return f"{API_BASE}/predictions", {"version": selector}


async def _latest_version(client: httpx.AsyncClient, owner_name: str) -> str:
    r = await client.get(f"{API_BASE}/models/{owner_name}", headers=_auth())
    r.raise_for_status()
    version_id = (r.json().get("latest_version") or {}).get("id")
    if not version_id:
        raise RuntimeError(f"Model {owner_name} has no published version")
    return version_id


async def start_prediction(client: httpx.AsyncClient, prompt: str) -> Dict[str, Any]:
    selector = REPLICATE_MODEL_VERSION or DEFAULT_MODEL
    url, extra = prediction_target(selector)
    body = {"input": {"prompt": prompt, "num_outputs": 1, "aspect_ratio": PANEL_ASPECT_RATIO, "output_format": "png"}, **extra}

    r = await client.post(url, headers=_auth(), json=body)
    if r.status_code == 404 and not extra:
        # Community models without a deployment endpoint must be run by version
        owner_name = selector.partition(":")[0]
        logger.info(f"No model endpoint for {owner_name}; running its latest version")
        version_id = await _latest_version(client, owner_name)
        r = await client.post(f"{API_BASE}/predictions", headers=_auth(), json={**body, "version": version_id})
    if r.status_code >= 400:
        logger.error(f"Replicate rejected prediction ({r.status_code}): {r.text}")
        raise RuntimeError(f"Replicate create failed {r.status_code}: {r.text}")
    return r.json()


async def wait_for_output(client: httpx.AsyncClient, prediction: Dict[str, Any]) -> str:
    """Poll a prediction until it finishes and return its first output URL."""
    pred_id = prediction["id"]
    poll_url = (prediction.get("urls") or {}).get("get") or f"{API_BASE}/predictions/{pred_id}"
    deadline = time.time() + REPLICATE_POLL_TIMEOUT_S
    body = prediction

    while body.get("status") not in FINISHED:
        if time.time() > deadline:
            raise TimeoutError(f"Prediction {pred_id} did not finish within {REPLICATE_POLL_TIMEOUT_S}s")
        await asyncio.sleep(REPLICATE_POLL_INTERVAL_MS / 1000.0)
        r = await client.get(poll_url, headers=_auth())
        if r.status_code >= 400:
            raise RuntimeError(f"Replicate status failed {r.status_code}: {r.text}")
        body = r.json()
        logger.debug(f"Prediction {pred_id}: {body.get('status')}")

    if body["status"] != "succeeded":
        raise RuntimeError(f"Prediction {pred_id} {body['status']}: {body.get('error')}")
    output = body.get("output")
    if isinstance(output, list):
        output = output[0] if output else None
    if not output:
        raise RuntimeError(f"Prediction {pred_id} succeeded without output")
    return output


async def generate_image_bytes(prompt: str) -> bytes:
    """Render one panel and return the downloaded image."""
    async with httpx.AsyncClient(timeout=60) as client:
        prediction = await start_prediction(client, prompt)
        logger.info(f"Replicate prediction {prediction['id']} started for: {prompt[:80]}...")
        image_url = await wait_for_output(client, prediction)
        img = await client.get(image_url)
        img.raise_for_status()
        return img.content
