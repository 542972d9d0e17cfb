"""posse-bridge: syndicate Ghost posts to Bluesky and import civic events.

Publish on your own site, syndicate elsewhere: Ghost articles become
Bluesky posts exactly once, over a DPoP-bound OAuth session. Upcoming
Mobilize events are imported as moderated civic actions.
"""

__version__ = "0.1.0"

from posse_bridge.config import BridgeConfig, load_config
from posse_bridge.factory import Bridge, build_bridge
from posse_bridge.pipeline import PublishPipeline, PublishTrigger
from posse_bridge.sync_log import SyncLog, SyncLogEntry
from posse_bridge.transform import Article, to_protocol_post

__all__ = [
    "Article",
    "Bridge",
    "BridgeConfig",
    "PublishPipeline",
    "PublishTrigger",
    "SyncLog",
    "SyncLogEntry",
    "build_bridge",
    "load_config",
    "to_protocol_post",
]
