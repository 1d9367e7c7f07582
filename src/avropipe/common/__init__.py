"""Shared publish/consume infrastructure.

This package provides:
- AvroPublisher: encodes records and publishes them with delivery receipts
- AvroSubscriber: polls, decodes and acknowledges records
- Kafka connection/security config builders
- Prometheus metrics and shutdown signal helpers

Import classes directly from submodules to avoid loading aiokafka at
package import time:
    from avropipe.common.publisher import AvroPublisher
    from avropipe.common.subscriber import AvroSubscriber
"""

# Don't import concrete implementations here; codec and registry import
# submodules of this package.

__all__: list[str] = []
