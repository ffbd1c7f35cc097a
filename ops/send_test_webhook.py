#!/usr/bin/env python3
"""Post sample Skorozvon call results to a running relay and print the outcome.

Usage: python ops/send_test_webhook.py [base_url] [scenario_id]
"""
import sys
import time

import httpx

BASE_URL = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8000"
SCENARIO_ID = sys.argv[2] if len(sys.argv) > 2 else "42"

results = [
    "Горячий",
    "Успех: встреча назначена",
    "Отказ",
    None,
]

for i, result_name in enumerate(results):
    call_id = f"test-{int(time.time())}-{i}"
    payload = {
        "type": "call_result",
        "call": {
            "id": call_id,
            "scenario_id": SCENARIO_ID,
            "phone": "+79001234567",
            "started_at": "2024-03-05T14:30:00+03:00",
            "duration": 95,
            "user": {"id": 1, "name": "Тестовый менеджер"},
        },
        "call_result": {"result_name": result_name, "comment": "ops smoke test"},
    }
    r = httpx.post(f"{BASE_URL}/webhook/skorozvon", json=payload, timeout=10)
    print(f"{str(result_name)[:30]:<32} -> {r.status_code} {r.text[:80]}")

r = httpx.get(f"{BASE_URL}/health", timeout=10)
print("health:", r.json())
