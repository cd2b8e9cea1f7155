import io, os, time, httpx, asyncio, logging
from dataclasses import dataclass, field
from typing import Optional

from PIL import Image

from . import settings
from .errors import ConfigurationError, UpstreamProviderError

logger = logging.getLogger(__name__)

NEGATIVE_PROMPT = "blurry, violent, scary, photorealistic, inconsistent characters, text, watermark"


@dataclass
class Illustration:
    image: bytes
    seed: Optional[int]
    meta: dict = field(default_factory=dict)


def _headers():
    token = os.getenv("REPLICATE_API_TOKEN", "")
    if not token:
        raise ConfigurationError("REPLICATE_API_TOKEN is not configured.")
    return {"Authorization": f"Token {token}"}


def _model_selector() -> str:
    # Prefer explicit version from env for stability; fall back to a public model alias (latest).
    return settings.REPLICATE_MODEL_VERSION or "black-forest-labs/flux-schnell"


def _parse_selector(selector: str):
    # Returns a tuple (mode, data)
    # mode == "version": data={"version": <hash>}
    # mode == "model": data={"owner": <owner>, "name": <name>}
    if "/" in selector:
        owner_name, _, _version_alias = selector.partition(":")
        if "/" in owner_name:
            owner, name = owner_name.split("/", 1)
            return "model", {"owner": owner, "name": name}
    return "version", {"version": selector}


def styled_prompt(prompt: str, art_style: Optional[str]) -> str:
    style = art_style or "storybook"
    return f"{prompt}, {style} illustration style, consistent characters, soft lighting, no text"


def to_png(image_data: bytes) -> bytes:
    """Replicate often answers with WebP; pages are served as PNG."""
    with Image.open(io.BytesIO(image_data)) as pil_img:
        if pil_img.format == "PNG":
            return image_data
        if pil_img.mode in ("RGBA", "LA"):
            # Flatten transparency onto white
            background = Image.new("RGB", pil_img.size, (255, 255, 255))
            if pil_img.mode == "LA":
                pil_img = pil_img.convert("RGBA")
            background.paste(pil_img, mask=pil_img.split()[-1])
            pil_img = background
        elif pil_img.mode != "RGB":
            pil_img = pil_img.convert("RGB")
        png_buffer = io.BytesIO()
        pil_img.save(png_buffer, format="PNG")
        return png_buffer.getvalue()


async def _create_prediction(client: httpx.AsyncClient, json_body: dict) -> dict:
    selector = _model_selector()
    mode, data = _parse_selector(selector)
    if mode == "version":
        json_body["version"] = data["version"]
        url = "https://api.replicate.com/v1/predictions"
    else:
        url = f"https://api.replicate.com/v1/models/{data['owner']}/{data['name']}/predictions"

    logger.info(f"Sending request to Replicate: {url}")
    headers = {**_headers(), "Content-Type": "application/json"}
    r = await client.post(url, headers=headers, json=json_body)
    if r.status_code >= 400 and mode == "model" and r.status_code == 404:
        # The model endpoint can 404 for aliased models; resolve the latest version instead
        logger.error(f"Replicate create failed {r.status_code}: {r.text}")
        logger.info("Falling back to latest version resolution for model")
        model_resp = await client.get(
            f"https://api.replicate.com/v1/models/{data['owner']}/{data['name']}",
            headers=_headers(),
        )
        if model_resp.status_code >= 400:
            raise UpstreamProviderError("replicate", "model lookup failed", status_code=model_resp.status_code, body=model_resp.text)
        version_id = (model_resp.json().get("latest_version") or {}).get("id")
        if not version_id:
            raise UpstreamProviderError("replicate", "could not resolve latest version for model")
        logger.info(f"Resolved latest version: {version_id}")
        r = await client.post("https://api.replicate.com/v1/predictions", headers=headers, json={**json_body, "version": version_id})
    if r.status_code >= 400:
        logger.error(f"Replicate create failed {r.status_code}: {r.text}")
        raise UpstreamProviderError("replicate", "prediction create failed", status_code=r.status_code, body=r.text)
    return r.json()


async def _wait_for_output(client: httpx.AsyncClient, pred_id: str) -> str:
    start = time.time()
    while True:
        s = await client.get(f"https://api.replicate.com/v1/predictions/{pred_id}", headers=_headers())
        if s.status_code >= 400:
            logger.error(f"Replicate status failed {s.status_code}: {s.text}")
            raise UpstreamProviderError("replicate", "status check failed", status_code=s.status_code, body=s.text)
        body = s.json()
        status = body.get("status")
        logger.debug(f"Replicate prediction {pred_id} status: {status}")

        if status in ("succeeded", "failed", "canceled"):
            if status != "succeeded":
                logger.error(f"Replicate failed: {status}. logs={body.get('logs')} error={body.get('error')}")
                raise UpstreamProviderError("replicate", f"prediction {status}", body={"error": body.get("error")})
            output = body.get("output")
            if isinstance(output, list) and output:
                return output[0]
            if isinstance(output, str) and output:
                return output
            raise UpstreamProviderError("replicate", "prediction succeeded without an output URL", body=body)
        if time.time() - start > settings.REPLICATE_POLL_TIMEOUT_S:
            logger.error(f"Replicate polling timeout for prediction {pred_id}")
            raise UpstreamProviderError("replicate", "polling timeout", status_code=504)
        await asyncio.sleep(settings.REPLICATE_POLL_INTERVAL_MS / 1000.0)


async def generate_illustration(prompt: str, seed: Optional[int] = None, art_style: Optional[str] = None,
                                aspect_ratio: str = "3:2") -> Illustration:
    logger.info(f"Starting Replicate image generation for prompt: {prompt[:100]}...")
    json_body = {
        "input": {
            "prompt": styled_prompt(prompt, art_style),
            "negative_prompt": NEGATIVE_PROMPT,
            "aspect_ratio": aspect_ratio,
            "num_outputs": 1,
        }
    }
    if seed is not None:
        json_body["input"]["seed"] = seed

    try:
        async with httpx.AsyncClient(timeout=30) as client:
            pred = await _create_prediction(client, json_body)
            pred_id = pred["id"]
            logger.info(f"Replicate prediction created with ID: {pred_id}")
            url = await _wait_for_output(client, pred_id)
            img = await client.get(url, timeout=60)
            if img.status_code >= 400:
                raise UpstreamProviderError("replicate", "image download failed", status_code=img.status_code)
    except httpx.TimeoutException:
        logger.error("Replicate request timed out")
        raise UpstreamProviderError("replicate", "request timed out", status_code=504)
    except httpx.HTTPError as e:
        logger.error(f"Replicate request failed: {e}")
        raise UpstreamProviderError("replicate", "request failed")

    try:
        image_data = to_png(img.content)
    except OSError as e:
        raise UpstreamProviderError("replicate", f"unreadable image output: {e}")
    return Illustration(
        image=image_data,
        seed=seed,
        meta={"predictionId": pred_id, "sourceUrl": url, "aspectRatio": aspect_ratio, "artStyle": art_style or "storybook"},
    )


class ReplicateImages:
    """Image adapter handed to the pipeline."""

    async def illustrate(self, prompt: str, seed: Optional[int] = None, art_style: Optional[str] = None,
                         aspect_ratio: str = "3:2") -> Illustration:
        return await generate_illustration(prompt, seed=seed, art_style=art_style, aspect_ratio=aspect_ratio)
