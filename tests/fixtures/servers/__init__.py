"""Fake exchange feed and index store servers."""

from tests.fixtures.servers.fake_servers import (
    BulkRequest,
    FakeFeedServer,
    FakeIndexStore,
    StalledFeedServer,
    l2update_frame,
    no_frames,
    subscriptions_ack,
    ticker_frame,
)

__all__ = [
    "BulkRequest",
    "FakeFeedServer",
    "FakeIndexStore",
    "StalledFeedServer",
    "l2update_frame",
    "no_frames",
    "subscriptions_ack",
    "ticker_frame",
]
