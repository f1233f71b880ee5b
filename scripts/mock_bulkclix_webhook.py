import json
import hmac
import hashlib
import uuid
import httpx
import asyncio
from dotenv import load_dotenv
import os
import sys
import logging
import time

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

load_dotenv()

BASE_URL = os.getenv("VOTEPAY_BASE_URL", "http://localhost:8000")
WEBHOOK_URL = f"{BASE_URL}/api/payments/bulkclix-webhook"
STATUS_URL = f"{BASE_URL}/api/payments/status"
WEBHOOK_SECRET = os.getenv("BULKCLIX_WEBHOOK_SECRET")

if WEBHOOK_SECRET:
    logger.info("BULKCLIX_WEBHOOK_SECRET set; callbacks will be signed")
else:
    logger.info("BULKCLIX_WEBHOOK_SECRET not set; sending unsigned callbacks like BulkClix does")


def sign(timestamp: int, body: str, secret: str) -> str:
    signed_payload = f"{timestamp}.{body}"
    return hmac.new(secret.encode(), signed_payload.encode(), hashlib.sha256).hexdigest()


def callback_payload(transaction_id: str, status: str = "success", phone: str = "0241234567") -> dict:
    """A callback body shaped like the ones BulkClix posts."""
    return {
        "amount": "10.00",
        "status": status,
        "transaction_id": f"BCX{uuid.uuid4().hex[:10].upper()}",
        "ext_transaction_id": transaction_id,
        "phone_number": phone,
    }


async def send_callback(client: httpx.AsyncClient, payload: dict, force_signature: str = None):
    body = json.dumps(payload, separators=(",", ":"))
    headers = {"Content-Type": "application/json"}

    if WEBHOOK_SECRET or force_signature:
        timestamp = int(time.time())
        headers["X-Timestamp"] = str(timestamp)
        headers["X-Signature"] = force_signature or sign(timestamp, body, WEBHOOK_SECRET)

    try:
        response = await client.post(WEBHOOK_URL, content=body, headers=headers, timeout=10.0)
    except httpx.RequestError as e:
        logger.error(f"Request failed: {str(e)}")
        return None

    logger.info(f"Status: {response.status_code}")
    logger.info(f"Response: {response.text}")
    return response


async def run_test_scenarios(transaction_id: str):
    """
    Replay the callback sequences BulkClix produces for one transaction.

    `transaction_id` should be the id returned by /api/payments/initiate.
    """
    legacy_reference = f"PRELYCT-{transaction_id}-{int(time.time() * 1000)}"

    test_cases = [
        {
            "name": "Case 1: Pending callback",
            "payload": callback_payload(transaction_id, status="pending"),
            "expected_status": 200,
        },
        {
            "name": "Case 2: Success callback",
            "payload": callback_payload(transaction_id, status="success"),
            "expected_status": 200,
        },
        {
            "name": "Case 3: Replayed success",
            "payload": callback_payload(transaction_id, status="success"),
            "expected_status": 200,
        },
        {
            "name": "Case 4: Late failure after success (ignored)",
            "payload": callback_payload(transaction_id, status="failed"),
            "expected_status": 200,
        },
        {
            "name": "Case 5: Legacy reference format",
            "payload": callback_payload(legacy_reference, status="success"),
            "expected_status": 200,
        },
        {
            "name": "Case 6: Unknown transaction",
            "payload": callback_payload(str(uuid.uuid4()), status="success"),
            "expected_status": 200,
        },
        {
            "name": "Case 7: No identifiers",
            "payload": {"status": "success", "amount": "10.00"},
            "expected_status": 400,
        },
    ]
    if WEBHOOK_SECRET:
        test_cases.append({
            "name": "Case 8: Invalid signature",
            "payload": callback_payload(transaction_id),
            "expected_status": 401,
            "force_signature": "fake_sig",
        })

    passed = 0
    async with httpx.AsyncClient() as client:
        for case in test_cases:
            logger.info(f"\n=== {case['name']} ===")
            response = await send_callback(client, case["payload"], case.get("force_signature"))
            status_code = response.status_code if response is not None else None

            if status_code == case["expected_status"]:
                passed += 1
                logger.info(f"PASS (expected {case['expected_status']})")
            else:
                logger.error(f"FAIL: expected {case['expected_status']}, got {status_code}")

        response = await client.get(STATUS_URL, params={"transaction_id": transaction_id}, timeout=10.0)
        logger.info(f"\nFinal status poll: {response.status_code} {response.text}")

    logger.info(f"\n{passed}/{len(test_cases)} scenarios behaved as expected")


if __name__ == "__main__":
    if len(sys.argv) != 2:
        logger.error("Usage: python scripts/mock_bulkclix_webhook.py <transaction_id>")
        sys.exit(1)

    asyncio.run(run_test_scenarios(sys.argv[1]))
