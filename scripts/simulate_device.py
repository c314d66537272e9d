"""
Stand-in for the pipe-mounted camera: posts a photo and two random pressure
readings to a running FlowGuardian server.

    python scripts/simulate_device.py test_images/wall.png --url http://localhost:8000/api/analyze-leak
"""
import argparse
import logging
import random
from typing import Optional, Tuple

import requests

logger = logging.getLogger(__name__)

BACKEND_URL = "http://localhost:8000/api/analyze-leak"


def random_pressures() -> Tuple[float, float]:
    return round(random.uniform(10, 20), 2), round(random.uniform(10, 20), 2)


def send_test_image(path: str,
                    end1: float,
                    end2: float,
                    url: str = BACKEND_URL,
                    timeout: float = 120.0) -> Optional[dict]:
    with open(path, "rb") as f:
        try:
            response = requests.post(
                url,
                files={"image": (path, f)},
                data={"end1_pressure": end1, "end2_pressure": end2},
                timeout=timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Error sending {path}: {e}")
            return None

    result = response.json()
    logger.info(f"Server response: {result.get('message')} ({result.get('leak_count')} leak(s))")
    return result


def main(argv=None):
    parser = argparse.ArgumentParser(description="Send test images to the leak analyzer")
    parser.add_argument("images", nargs="+")
    parser.add_argument("--url", default=BACKEND_URL)
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO)
    for i, path in enumerate(args.images, start=1):
        end1, end2 = random_pressures()
        logger.info(f"Sending image {i} with pressures {end1}, {end2}")
        send_test_image(path, end1, end2, url=args.url)


if __name__ == "__main__":
    main()
