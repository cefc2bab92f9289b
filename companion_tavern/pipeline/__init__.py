"""Turn pipeline: parse model text, reconcile state, orchestrate sessions.

One turn for one player input:
  1. Assemble the GenerationRequest (assembler.PromptAssembler).
  2. Try channels in resolver order until one answers; a channel that fails
     with TransportUnavailable hands over to the next one.
  3. Parse the raw text with the extractor cascade (extractors.parse_response).
  4. Merge the parsed status into the canonical state (reconcile.merge), then
     apply caller-side accumulation such as the daily favor cap.
  5. Commit history + state and auto-save, or append a retryable failure
     marker and leave everything else untouched.
"""

from .core import TurnOutcome, TurnSession, apply_daily_cap  # noqa: F401
from .extractors import parse_response  # noqa: F401
from .reconcile import merge  # noqa: F401
from .reply import clean_reply  # noqa: F401
