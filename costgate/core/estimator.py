"""Pre-flight usage estimation for the enforcement gate."""

import logging
import math
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

# Characters per token used by the heuristic; deliberately low so counts come out high.
HEURISTIC_CHARS_PER_TOKEN = 3

# Overhead for message structure (role, formatting, etc.)
MESSAGE_OVERHEAD_TOKENS = 4


@dataclass(frozen=True)
class EstimatedUsage:
    """What the caller knows about a request before it is dispatched."""

    provider: str
    model: str
    input_units: Optional[int] = None
    max_output_units: Optional[int] = None
    prompt: Optional[str] = None
    messages: Optional[List[Dict[str, Any]]] = None


class TokenEstimator:
    """Estimates token counts for text inputs.

    With ``load_on_demand=False`` a model whose tiktoken encoder is not loaded
    yet is counted with the heuristic while the encoder loads on a background
    thread, so callers with a deadline never wait on a tokenizer download.
    """

    def __init__(self, estimation_mode: str = "tiktoken", load_on_demand: bool = True):
        """Initialize the token estimator.

        Args:
            estimation_mode: Estimation mode - "tiktoken" or "heuristic"
            load_on_demand: Load missing encoders inline instead of in the background
        """
        self.estimation_mode = estimation_mode
        self.load_on_demand = load_on_demand
        self._encoders = {}  # Cache for tiktoken encoders
        self._loading = set()
        self._lock = threading.Lock()

    def estimate_tokens(self, text: str, model: str) -> int:
        """Estimate token count for text.

        Args:
            text: Input text to estimate
            model: Model name (used for tiktoken encoding)

        Returns:
            Estimated token count
        """
        if not text:
            return 0

        if self.estimation_mode == "tiktoken":
            try:
                encoder = self._encoder(model)
                if encoder is not None:
                    return len(encoder.encode(text))
            except Exception as e:
                logger.warning(
                    "Tiktoken estimation failed for model %s: %s. Falling back to heuristic.",
                    model, e,
                )
        return self._estimate_with_heuristic(text)

    def estimate_from_messages(self, messages: List[Dict[str, Any]], model: str) -> int:
        """Estimate token count for chat messages, including per-message overhead."""
        if not messages:
            return 0

        total_tokens = 3  # reply priming
        for message in messages:
            total_tokens += MESSAGE_OVERHEAD_TOKENS
            content = message.get("content", "")
            if isinstance(content, str):
                total_tokens += self.estimate_tokens(content, model)
            elif isinstance(content, list):
                # Content blocks, e.g. [{"type": "text", "text": "..."}]
                for block in content:
                    if isinstance(block, dict):
                        total_tokens += self.estimate_tokens(block.get("text", ""), model)
        return total_tokens

    def preload(self, models: Iterable[str]) -> int:
        """Load encoders for ``models`` ahead of the first estimate.

        Returns:
            Number of encoders loaded
        """
        if self.estimation_mode != "tiktoken":
            return 0
        loaded = 0
        for model in models:
            if model in self._encoders:
                continue
            try:
                self._load(model)
            except Exception as e:
                logger.warning(
                    "Could not load tokenizer (%s); estimating with the heuristic until it loads", e
                )
                break
            loaded += 1
        logger.debug("Preloaded %d tokenizers", loaded)
        return loaded

    def _encoder(self, model: str):
        encoder = self._encoders.get(model)
        if encoder is not None:
            return encoder
        if self.load_on_demand:
            return self._load(model)
        self._load_in_background(model)
        return None

    def _load(self, model: str):
        import tiktoken

        try:
            encoder = tiktoken.encoding_for_model(model)
        except KeyError:
            # Model not recognized, use cl100k_base (GPT-4 default)
            logger.debug(
                "Model %s not recognized by tiktoken, using cl100k_base encoding", model
            )
            encoder = tiktoken.get_encoding("cl100k_base")
        self._encoders[model] = encoder
        return encoder

    def _load_in_background(self, model: str) -> None:
        with self._lock:
            if model in self._loading:
                return
            self._loading.add(model)

        def run() -> None:
            try:
                self._load(model)
            except Exception as e:
                logger.warning("Could not load tokenizer for %s: %s", model, e)
            finally:
                with self._lock:
                    self._loading.discard(model)

        threading.Thread(target=run, name=f"costgate-tokenizer-{model}", daemon=True).start()

    def _estimate_with_heuristic(self, text: str) -> int:
        return max(1, math.ceil(len(text) / HEURISTIC_CHARS_PER_TOKEN))


class OutputBaseline:
    """Running mean of observed output sizes per (provider, model). Thread-safe."""

    def __init__(self) -> None:
        self._stats: Dict[Tuple[str, str], Tuple[int, float]] = {}
        self._lock = threading.Lock()

    def observe(self, provider: str, model: str, output_units: int) -> None:
        key = (provider.lower(), model)
        with self._lock:
            count, mean = self._stats.get(key, (0, 0.0))
            count += 1
            mean += (output_units - mean) / count
            self._stats[key] = (count, mean)

    def mean(self, provider: str, model: str) -> Optional[float]:
        with self._lock:
            stats = self._stats.get((provider.lower(), model))
        return stats[1] if stats else None


class UsageEstimator:
    """Upper-bound usage estimate for a request that has not been sent yet.

    Output size is the caller's explicit maximum when given; otherwise the larger
    of ``input * output_ratio`` and the observed mean output size scaled by
    ``safety_factor``.
    """

    def __init__(
        self,
        token_estimator: Optional[TokenEstimator] = None,
        output_ratio: float = 0.6,
        safety_factor: float = 1.5,
        baseline: Optional[OutputBaseline] = None,
    ):
        self.token_estimator = token_estimator or TokenEstimator()
        self.output_ratio = output_ratio
        self.safety_factor = safety_factor
        self.baseline = baseline or OutputBaseline()

    def observe(self, provider: str, model: str, output_units: int) -> None:
        """Feed a real output size into the running baseline."""
        self.baseline.observe(provider, model, output_units)

    def estimate(self, usage: EstimatedUsage) -> Tuple[int, int]:
        """Return (input_units, output_units) for a pre-flight check."""
        if usage.input_units is not None:
            input_units = usage.input_units
        elif usage.messages:
            input_units = self.token_estimator.estimate_from_messages(usage.messages, usage.model)
        elif usage.prompt:
            input_units = self.token_estimator.estimate_tokens(usage.prompt, usage.model)
        else:
            input_units = 0

        if usage.max_output_units is not None:
            return input_units, usage.max_output_units

        output_units = math.ceil(input_units * self.output_ratio)
        mean = self.baseline.mean(usage.provider, usage.model)
        if mean is not None:
            output_units = max(output_units, math.ceil(mean * self.safety_factor))
        return input_units, output_units
