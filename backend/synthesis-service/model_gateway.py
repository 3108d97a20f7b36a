"""
Synthesis Service - Model Gateway

Stateless text and vision invocation against either a remote messages-style
endpoint (httpx) or an in-process MedGemma runtime (transformers/torch).
"""

from __future__ import annotations

import base64
import importlib
import io
import logging
from threading import Lock
from typing import Any, Dict, List, Optional

import httpx

from config import GenerationConfig, ServiceSettings
from errors import InvocationFailure, PipelineInvocationError, ValidationError

logger = logging.getLogger(__name__)

SUPPORTED_IMAGE_MEDIA_TYPES = ("image/jpeg", "image/png")
MAX_IMAGE_BYTES = 5 * 1024 * 1024

TRANSFORMERS_IMPORT_LOCK = Lock()


def validate_image_payload(image_bytes: bytes, media_type: Optional[str]) -> None:
    normalized = (media_type or "").strip().lower()
    if normalized not in SUPPORTED_IMAGE_MEDIA_TYPES:
        raise ValidationError(
            f"Unsupported media type: {media_type}. Only JPEG and PNG are supported."
        )
    if not image_bytes:
        raise ValidationError("Image file is empty.")
    if len(image_bytes) > MAX_IMAGE_BYTES:
        raise ValidationError("Image file is too large. Maximum size is 5MB.")


class ModelGateway:
    mode = "abstract"

    def invoke(self, prompt: str, config: GenerationConfig) -> str:
        raise NotImplementedError

    def invoke_vision(
        self,
        image_bytes: bytes,
        media_type: str,
        prompt: str,
        config: GenerationConfig,
    ) -> str:
        raise NotImplementedError


class HttpModelGateway(ModelGateway):
    """
    Remote gateway speaking the messages API shape:
    request `messages[].content[]` blocks, response `content[0].text`.
    OpenAI-style `choices[0].message.content` responses are accepted too.
    """

    mode = "http"

    def __init__(self, base_url: str, path: str = "/v1/messages", api_key: Optional[str] = None) -> None:
        self.url = f"{base_url.rstrip('/')}/{path.lstrip('/')}"
        self.api_key = api_key

    def _headers(self) -> Dict[str, str]:
        headers = {"content-type": "application/json"}
        if self.api_key:
            headers["authorization"] = f"Bearer {self.api_key}"
        return headers

    @staticmethod
    def _body(content: List[Dict[str, Any]], config: GenerationConfig) -> Dict[str, Any]:
        return {
            "model": config.model_id,
            "max_tokens": config.max_tokens,
            "temperature": config.temperature,
            "messages": [{"role": "user", "content": content}],
        }

    @staticmethod
    def _extract_text(payload: Any) -> str:
        if isinstance(payload, dict):
            content = payload.get("content")
            if isinstance(content, list):
                texts = [
                    block.get("text", "")
                    for block in content
                    if isinstance(block, dict) and block.get("type", "text") == "text"
                ]
                if texts:
                    return "".join(texts)
            choices = payload.get("choices")
            if isinstance(choices, list) and choices:
                message = choices[0].get("message") if isinstance(choices[0], dict) else None
                if isinstance(message, dict) and isinstance(message.get("content"), str):
                    return message["content"]
        raise PipelineInvocationError("Model response did not contain any text content.")

    def _post(self, body: Dict[str, Any], config: GenerationConfig, *, vision: bool) -> str:
        try:
            with httpx.Client(timeout=config.timeout_seconds) as client:
                resp = client.post(self.url, json=body, headers=self._headers())
                resp.raise_for_status()
                payload = resp.json()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status == 413:
                raise PipelineInvocationError(
                    "Failed to invoke vision model. The image may be too large for the model."
                    if vision
                    else "Failed to invoke AI diagnostic model. The prompt is too large for the model.",
                    reason=InvocationFailure.PAYLOAD_TOO_LARGE,
                ) from exc
            if status == 429:
                raise PipelineInvocationError(
                    "Failed to invoke AI model. The service is throttled, try again later.",
                    reason=InvocationFailure.THROTTLED,
                ) from exc
            raise PipelineInvocationError(f"Failed to invoke AI model: HTTP {status}") from exc
        except httpx.HTTPError as exc:
            raise PipelineInvocationError(f"Failed to invoke AI model: {exc}") from exc
        except ValueError as exc:
            raise PipelineInvocationError(f"Failed to invoke AI model: invalid JSON body ({exc})") from exc
        return self._extract_text(payload)

    def invoke(self, prompt: str, config: GenerationConfig) -> str:
        logger.info("Invoking model %s (%d prompt chars)", config.model_id, len(prompt))
        text = self._post(self._body([{"type": "text", "text": prompt}], config), config, vision=False)
        logger.info("Model returned %d chars", len(text))
        return text

    def invoke_vision(
        self,
        image_bytes: bytes,
        media_type: str,
        prompt: str,
        config: GenerationConfig,
    ) -> str:
        validate_image_payload(image_bytes, media_type)
        content = [
            {
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": media_type.strip().lower(),
                    "data": base64.b64encode(image_bytes).decode("ascii"),
                },
            },
            {"type": "text", "text": prompt},
        ]
        logger.info("Invoking vision model %s (%d image bytes)", config.model_id, len(image_bytes))
        return self._post(self._body(content, config), config, vision=True)


class LocalMedGemmaGateway(ModelGateway):
    """
    In-process MedGemma runtime. Heavy imports happen on first use.
    """

    mode = "local"

    def __init__(self, device_pref: str = "auto", local_files_only: bool = True) -> None:
        self.device_pref = device_pref
        self.local_files_only = local_files_only
        self._loaded_model_id: Optional[str] = None
        self._processor = None
        self._model = None
        self._torch = None
        self._model_lock = Lock()
        self._infer_lock = Lock()

    def _resolve_device(self, torch: Any) -> str:
        if self.device_pref == "cpu":
            return "cpu"
        if self.device_pref in {"cuda", "gpu"}:
            if not torch.cuda.is_available():
                raise PipelineInvocationError("SYNTHESIS_LOCAL_DEVICE=cuda requested but CUDA is unavailable.")
            return "cuda"
        if self.device_pref == "mps":
            if not torch.backends.mps.is_available():
                raise PipelineInvocationError("SYNTHESIS_LOCAL_DEVICE=mps requested but MPS is unavailable.")
            return "mps"
        if torch.cuda.is_available():
            return "cuda"
        if torch.backends.mps.is_available():
            return "mps"
        return "cpu"

    def _ensure_model(self, model_id: str) -> None:
        if self._model is not None and self._loaded_model_id == model_id:
            return

        with self._model_lock:
            if self._model is not None and self._loaded_model_id == model_id:
                return
            try:
                with TRANSFORMERS_IMPORT_LOCK:
                    torch = importlib.import_module("torch")
                    transformers_mod = importlib.import_module("transformers")
            except Exception as exc:
                raise PipelineInvocationError(
                    "Local MedGemma import failed. Install the `local` extra "
                    f"(transformers/torch/accelerate/pillow). Detail: {exc}"
                ) from exc

            processor_cls = getattr(transformers_mod, "AutoProcessor", None)
            model_cls = getattr(transformers_mod, "AutoModelForImageTextToText", None)
            if model_cls is None:
                model_cls = getattr(transformers_mod, "AutoModelForVision2Seq", None)
            if processor_cls is None or model_cls is None:
                raise PipelineInvocationError(
                    "Installed transformers build is missing MedGemma auto classes. "
                    "Expected AutoProcessor + (AutoModelForImageTextToText or AutoModelForVision2Seq)."
                )

            device = self._resolve_device(torch)
            model_kwargs: Dict[str, Any] = {
                "local_files_only": self.local_files_only,
                "low_cpu_mem_usage": False,
            }
            if device == "cpu":
                model_kwargs["torch_dtype"] = torch.float32

            try:
                processor = processor_cls.from_pretrained(model_id, local_files_only=self.local_files_only)
                model = model_cls.from_pretrained(model_id, **model_kwargs)
                model = model.to(device)
            except (OSError, RuntimeError, ValueError) as exc:
                raise PipelineInvocationError(f"Failed to load local model {model_id}: {exc}") from exc
            model.eval()

            self._processor = processor
            self._model = model
            self._torch = torch
            self._loaded_model_id = model_id
            logger.info("Loaded local model %s on %s", model_id, device)

    def _generate(self, content: List[Dict[str, Any]], config: GenerationConfig, *, vision: bool) -> str:
        self._ensure_model(config.model_id)
        processor = self._processor
        model = self._model
        torch = self._torch

        messages = [
            {"role": "system", "content": [{"type": "text", "text": "You are a medical AI assistant."}]},
            {"role": "user", "content": content},
        ]
        generate_kwargs: Dict[str, Any] = {
            "max_new_tokens": config.max_tokens,
            "max_time": config.timeout_seconds,
            "do_sample": config.temperature > 0,
        }
        if config.temperature > 0:
            generate_kwargs["temperature"] = config.temperature

        # One shared model instance; generation is serialized.
        with self._infer_lock:
            try:
                inputs = processor.apply_chat_template(
                    messages,
                    add_generation_prompt=True,
                    tokenize=True,
                    return_dict=True,
                    return_tensors="pt",
                )
                inputs = {k: v.to(model.device) for k, v in inputs.items()}
                input_len = int(inputs["input_ids"].shape[-1])
                with torch.inference_mode():
                    generated = model.generate(**inputs, **generate_kwargs)
                output_ids = generated[0][input_len:]
                return processor.decode(output_ids, skip_special_tokens=True)
            except RuntimeError as exc:
                if "out of memory" in str(exc).lower():
                    raise PipelineInvocationError(
                        "Failed to invoke vision model. The image may be too large for the local runtime."
                        if vision
                        else "Failed to invoke AI diagnostic model. The prompt is too large for the local runtime.",
                        reason=InvocationFailure.PAYLOAD_TOO_LARGE,
                    ) from exc
                raise PipelineInvocationError(f"Failed to invoke local model: {exc}") from exc

    def invoke(self, prompt: str, config: GenerationConfig) -> str:
        return self._generate([{"type": "text", "text": prompt}], config, vision=False)

    def invoke_vision(
        self,
        image_bytes: bytes,
        media_type: str,
        prompt: str,
        config: GenerationConfig,
    ) -> str:
        validate_image_payload(image_bytes, media_type)
        try:
            image_mod = importlib.import_module("PIL.Image")
            image = image_mod.open(io.BytesIO(image_bytes)).convert("RGB")
        except ImportError as exc:
            raise PipelineInvocationError(f"Pillow is required for local vision inference: {exc}") from exc
        except OSError as exc:
            raise ValidationError(f"Image could not be decoded: {exc}") from exc
        content = [{"type": "image", "image": image}, {"type": "text", "text": prompt}]
        return self._generate(content, config, vision=True)


def build_model_gateway(settings: ServiceSettings) -> ModelGateway:
    if settings.gateway_mode == "local":
        return LocalMedGemmaGateway(
            device_pref=settings.local_device,
            local_files_only=settings.local_files_only,
        )
    return HttpModelGateway(
        base_url=settings.gateway_base_url,
        path=settings.gateway_path,
        api_key=settings.gateway_api_key,
    )
