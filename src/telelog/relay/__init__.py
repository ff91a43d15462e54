"""Journal-to-Telegram relay.

Provides journal tailing, allow/deny rule filtering, message batching and
rate-limit-aware delivery.
"""

from .composer import MAX_BLOCK_SIZE, MERGE_BOUND, Block, compose, merge
from .daemon import RelayDaemon, run_relay
from .dispatcher import Dispatcher, DispatcherState, RetryState
from .entry import Entry, Field, FieldNotFoundError
from .journal import JournalSource, entry_from_record
from .rules import Action, Logic, NativeMatchSpec, Rule, RuleEngine, RuleGroup, RuleSet
from .telegram import SendResult, TelegramClient

__all__ = [
    # Daemon
    "RelayDaemon",
    "run_relay",
    # Rule engine
    "RuleEngine",
    "RuleSet",
    "RuleGroup",
    "Rule",
    "Action",
    "Logic",
    "NativeMatchSpec",
    # Entries
    "Entry",
    "Field",
    "FieldNotFoundError",
    "JournalSource",
    "entry_from_record",
    # Batching
    "Block",
    "compose",
    "merge",
    "MAX_BLOCK_SIZE",
    "MERGE_BOUND",
    # Delivery
    "Dispatcher",
    "DispatcherState",
    "RetryState",
    "TelegramClient",
    "SendResult",
]
