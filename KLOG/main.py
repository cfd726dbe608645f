#!/usr/bin/env python3
"""
KLOG - Main Entry Point
Run the Kubernetes log streamer terminal UI
"""
import logging
import sys

from KLOG.config import load_settings
from KLOG.logging_config import configure_logging
from KLOG.service import LogStreamService
from KLOG.UI import run_app

logger = logging.getLogger(__name__)


def main() -> int:
    settings = load_settings()
    log_file = configure_logging(settings)

    service = LogStreamService(settings)
    if settings.connections_file.exists():
        try:
            count = service.load_connections(settings.connections_file)
            print(f"Loaded {count} connections from {settings.connections_file}")
        except Exception as e:
            logger.error(f"Could not load {settings.connections_file}", exc_info=True)
            print(f"Warning: could not load connections: {e}")

    print("Starting KLOG Terminal UI...")
    print(f"Logging to {log_file}")
    print("Press 'q' to quit, 's' to stop a stream, 'w' to close a tab")
    print("-" * 80)

    try:
        run_app(service, settings)
    except KeyboardInterrupt:
        print("\nKLOG terminated by user")
    except Exception as e:
        logger.error("KLOG crashed", exc_info=True)
        print(f"\nError running KLOG: {e}")
        import traceback
        traceback.print_exc()
        return 1
    finally:
        service.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
