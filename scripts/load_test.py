"""
Load test for the webrag API.
Sends concurrent /chat requests against a fixed URL set so the first request
pays the cold index build and the rest hit the cached index.

Usage:  python load_test.py [num_requests] [concurrency] [url ...]
"""
import sys
import time
import json
import urllib.request
import urllib.error
from concurrent.futures import ThreadPoolExecutor, as_completed

BASE_URL = "http://127.0.0.1:3000"
DEFAULT_URLS = ["https://en.wikipedia.org/wiki/Retrieval-augmented_generation"]

MESSAGES = [
    "What is this page about?",
    "Summarize the key points.",
    "What problem does this approach solve?",
    "What are the main limitations mentioned?",
    "How does retrieval improve the answers?",
    "hello",
    "Which techniques are compared?",
    "thanks",
]


def send_chat(message: str, urls: list) -> dict:
    payload = json.dumps({"urls": urls, "message": message, "conversationHistory": []}).encode()
    req = urllib.request.Request(
        f"{BASE_URL}/chat",
        data=payload,
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    start = time.perf_counter()
    try:
        with urllib.request.urlopen(req, timeout=300) as resp:
            data = json.loads(resp.read())
            latency = (time.perf_counter() - start) * 1000
            return {"success": True, "status": resp.status, "latency_ms": latency, "answer_len": len(data.get("message", ""))}
    except urllib.error.HTTPError as e:
        latency = (time.perf_counter() - start) * 1000
        return {"success": False, "status": e.code, "latency_ms": latency, "error": str(e)}
    except Exception as e:
        latency = (time.perf_counter() - start) * 1000
        return {"success": False, "status": None, "latency_ms": latency, "error": str(e)}


def main():
    num_requests = int(sys.argv[1]) if len(sys.argv) > 1 else 10
    concurrency = int(sys.argv[2]) if len(sys.argv) > 2 else 4
    urls = sys.argv[3:] or DEFAULT_URLS

    print(f"\n{'='*60}")
    print(f"  webrag Load Test")
    print(f"  Requests: {num_requests}  |  Concurrency: {concurrency}  |  URLs: {len(urls)}")
    print(f"{'='*60}\n")

    results = []
    wall_start = time.perf_counter()

    with ThreadPoolExecutor(max_workers=concurrency) as pool:
        futures = [pool.submit(send_chat, MESSAGES[i % len(MESSAGES)], urls) for i in range(num_requests)]

        for f in as_completed(futures):
            r = f.result()
            status = "OK" if r["success"] else f"FAIL {r['status']}"
            print(f"  [{status}] {r['latency_ms']:>8.1f} ms")
            results.append(r)

    wall_elapsed = time.perf_counter() - wall_start

    # Summary.
    successes = [r for r in results if r["success"]]
    failures = [r for r in results if not r["success"]]
    timeouts = [r for r in failures if r["status"] == 408]
    latencies = [r["latency_ms"] for r in successes]

    print(f"\n{'='*60}")
    print(f"  RESULTS")
    print(f"{'='*60}")
    print(f"  Total requests:    {num_requests}")
    print(f"  Successful:        {len(successes)}")
    print(f"  Failed:            {len(failures)}  (timeouts: {len(timeouts)})")
    print(f"  Wall time:         {wall_elapsed:.2f} s")
    print(f"  Throughput:        {num_requests / wall_elapsed:.2f} req/s")
    if latencies:
        print(f"  Avg latency:       {sum(latencies)/len(latencies):.0f} ms")
        print(f"  Min latency:       {min(latencies):.0f} ms")
        print(f"  Max latency:       {max(latencies):.0f} ms")
        p50 = sorted(latencies)[len(latencies)//2]
        p95 = sorted(latencies)[int(len(latencies)*0.95)]
        print(f"  P50 latency:       {p50:.0f} ms")
        print(f"  P95 latency:       {p95:.0f} ms")
    print(f"  Error rate:        {len(failures)/num_requests*100:.1f}%")
    print(f"{'='*60}\n")

    # Fetch server metrics, including index cache hits and builds.
    try:
        req = urllib.request.Request(f"{BASE_URL}/metrics")
        with urllib.request.urlopen(req) as resp:
            metrics = json.loads(resp.read())
            print("  Server /metrics snapshot:")
            print(json.dumps(metrics, indent=4))
    except urllib.error.URLError as e:
        print(f"  Could not fetch /metrics: {e}")


if __name__ == "__main__":
    main()
