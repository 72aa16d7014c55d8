"""
Boardroom

Orchestrates AI executive personas through turn-based debates and meters the
resulting usage against subscription tiers, with cost tracking and billing.
"""

__version__ = "0.1.0"

# Billing
from boardroom.billing import BillingEngine, Subscription, calculate_proration

# Completion
from boardroom.completion import Completion, OpenRouterClient, TextCompletion

# Configuration
from boardroom.config import Settings

# Cost tracking
from boardroom.costs import CostCalculator, calculate_message_cost, estimate_debate_cost

# Events
from boardroom.events import DebateEvent, DebateEventType, EventEmitter, encode_sse

# Personas
from boardroom.personas import PERSONAS, Persona

# Debate orchestration
from boardroom.scheduler import DebateConfig, DebateScheduler, DebateState
from boardroom.selector import DebateMode, select_personas
from boardroom.service import Services
from boardroom.store import MemoryStore, Store
from boardroom.stream import start_debate_stream
from boardroom.summary import DebateSummarizer, DebateSummary

# Tiers and usage
from boardroom.tiers import SUBSCRIPTION_TIERS, SubscriptionTier
from boardroom.usage import UsageMeter

__all__ = [
    # Version
    "__version__",
    # Config
    "Settings",
    # Personas
    "Persona",
    "PERSONAS",
    "DebateMode",
    "select_personas",
    # Debate
    "DebateConfig",
    "DebateScheduler",
    "DebateState",
    "DebateSummarizer",
    "DebateSummary",
    "start_debate_stream",
    "DebateEvent",
    "DebateEventType",
    "EventEmitter",
    "encode_sse",
    # Completion
    "TextCompletion",
    "Completion",
    "OpenRouterClient",
    # Metering
    "UsageMeter",
    "CostCalculator",
    "calculate_message_cost",
    "estimate_debate_cost",
    "SubscriptionTier",
    "SUBSCRIPTION_TIERS",
    # Billing
    "BillingEngine",
    "Subscription",
    "calculate_proration",
    # Wiring
    "Store",
    "MemoryStore",
    "Services",
]
