import argparse
import logging

from flowmachine.worker.runner import run_worker

if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Start a Flow Machine task worker")
    parser.add_argument(
        "--interval", type=float, default=None, help="Seconds between polls"
    )
    parser.add_argument(
        "--batch-size", type=int, default=None, help="Max tasks claimed per poll"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    run_worker(interval=args.interval, batch_size=args.batch_size)
