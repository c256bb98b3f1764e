#!/usr/bin/env python3
"""
Quick test script to verify the Concierge API
Run the server first: uvicorn concierge.main:app --reload

Calls go to real phones when VAPI is configured; set TEST_PROVIDER_PHONE
to a number you own.
"""

import os
import time

import requests

BASE_URL = os.getenv("CONCIERGE_URL", "http://127.0.0.1:8000")
TEST_PHONE = os.getenv("TEST_PROVIDER_PHONE", "")


def test_api():
    print("Testing Concierge API...\n")

    # Test 1: Root endpoint
    print("1. Testing root endpoint...")
    response = requests.get(f"{BASE_URL}/")
    print(f"   Status: {response.status_code}")
    print(f"   Version: {response.json()['version']}\n")

    # Test 2: Readiness
    print("2. Testing readiness...")
    response = requests.get(f"{BASE_URL}/health/ready")
    print(f"   Status: {response.status_code}")
    print(f"   Checks: {response.json()}\n")

    # Test 3: Which backend would a call use
    print("3. Testing call system status...")
    response = requests.get(f"{BASE_URL}/providers/call/status")
    data = response.json()["data"]
    print(f"   Active method: {data['activeMethod']}")
    print(f"   Fallback available: {data['fallbackAvailable']}\n")

    # Test 4: Research
    print("4. Testing provider research...")
    response = requests.post(
        f"{BASE_URL}/providers/research",
        json={"service": "plumber", "location": "Greenville, SC", "minRating": 4.0, "maxResults": 5},
    )
    data = response.json()["data"]
    print(f"   Status: {data['status']} via {data['method']}")
    for provider in data["providers"]:
        print(f"   - {provider['name']} {provider.get('phone') or '(no phone)'}")
    print()

    if not TEST_PHONE:
        print("Skipping call tests (TEST_PROVIDER_PHONE not set)\n")
        print("✅ All API tests completed!")
        return

    # Test 5: Async batch call against a phone you own
    print("5. Testing async batch call...")
    response = requests.post(
        f"{BASE_URL}/providers/batch-call-async",
        json={
            "providers": [{"name": "Test Provider", "phone": TEST_PHONE}],
            "serviceNeeded": "plumbing",
            "userCriteria": "licensed, available this week",
            "maxConcurrent": 1,
        },
    )
    job_id = response.json()["data"]["jobId"]
    print(f"   Job: {job_id}")

    while True:
        job = requests.get(f"{BASE_URL}/providers/batch-status/{job_id}").json()["data"]
        print(f"   Status: {job['status']}")
        if job["status"] in ("completed", "failed"):
            break
        time.sleep(10)

    if job["status"] == "completed":
        for rec in job["recommendations"]["recommendations"]:
            print(f"   {rec['providerName']}: {rec['score']} - {rec['reasoning']}")
    else:
        print(f"   Error: {job['error']}")
    print()

    print("✅ All API tests completed!")


if __name__ == "__main__":
    try:
        test_api()
    except requests.exceptions.ConnectionError:
        print("❌ Error: Could not connect to server.")
        print("Please start the server first:")
        print("  uvicorn concierge.main:app --reload")
