#!/usr/bin/env python3
"""
Smoke checks for a running sound-board media service.
Uploads a clip, streams it back with and without ranges, and cleans up.
"""

import os
import sys
from io import BytesIO

import requests

BASE_URL = os.environ.get("SOUNDBOARD_BASE_URL", "http://localhost:8000")
check_results = []


class CheckResult:
    def __init__(self, endpoint, method, status, message, severity="info"):
        self.endpoint = endpoint
        self.method = method
        self.status = status
        self.message = message
        self.severity = severity

    def __str__(self):
        status_symbol = "✓" if self.status == "PASS" else "✗" if self.status == "FAIL" else "!"
        return f"[{status_symbol}] {self.method} {self.endpoint}: {self.message}"


def log_check(endpoint, method, status, message, severity="info"):
    result = CheckResult(endpoint, method, status, message, severity)
    check_results.append(result)
    print(result)


def check_health():
    print("\n=== Health ===")
    try:
        response = requests.get(f"{BASE_URL}/health", timeout=5)
        data = response.json()
        if response.status_code == 200 and data.get("status") == "healthy":
            log_check("/health", "GET", "PASS", "Health check passed")
        else:
            log_check("/health", "GET", "WARN", f"Unhealthy status: {data}", "warning")
    except requests.RequestException as e:
        log_check("/health", "GET", "FAIL", f"Exception: {e}", "error")


def check_upload():
    print("\n=== Upload ===")
    try:
        files = {"file": ("clip.mp3", BytesIO(b"hello"), "audio/mpeg")}
        response = requests.post(
            f"{BASE_URL}/upload", files=files, data={"categoryId": "fx"}, timeout=10
        )
        if response.status_code != 200:
            log_check("/upload", "POST", "FAIL", f"Status: {response.status_code}, Response: {response.text}", "error")
            return None
        data = response.json()
        if data.get("format") == "mp3" and data.get("fileSize") == 5:
            log_check("/upload", "POST", "PASS", f"Uploaded {data['id']}")
        else:
            log_check("/upload", "POST", "FAIL", f"Unexpected metadata: {data}", "error")
        return data
    except requests.RequestException as e:
        log_check("/upload", "POST", "FAIL", f"Exception: {e}", "error")
        return None


def check_rejected_upload():
    print("\n=== Rejected upload ===")
    try:
        files = {"file": ("evil.exe", BytesIO(b"MZ"), "application/octet-stream")}
        response = requests.post(f"{BASE_URL}/upload", files=files, timeout=10)
        if response.status_code == 400:
            log_check("/upload", "POST", "PASS", "Disallowed extension rejected")
        else:
            log_check("/upload", "POST", "FAIL", f"Status: {response.status_code}", "critical")
    except requests.RequestException as e:
        log_check("/upload", "POST", "FAIL", f"Exception: {e}", "error")


def check_media(metadata):
    print("\n=== Media delivery ===")
    if not metadata:
        log_check("/media/<id>", "GET", "SKIP", "No upload to stream")
        return

    url = f"{BASE_URL}{metadata['filePath']}"
    try:
        full = requests.get(url, timeout=10)
        if full.status_code == 200 and full.content == b"hello":
            log_check(metadata["filePath"], "GET", "PASS", "Full body matches upload")
        else:
            log_check(metadata["filePath"], "GET", "FAIL", f"Status: {full.status_code}", "error")

        partial = requests.get(url, headers={"Range": "bytes=0-2"}, timeout=10)
        if partial.status_code == 206 and partial.content == b"hel":
            log_check(metadata["filePath"], "GET", "PASS", "Range request served 206")
        else:
            log_check(metadata["filePath"], "GET", "FAIL", f"Range status: {partial.status_code}", "error")

        cached = requests.get(url, headers={"If-None-Match": full.headers.get("ETag", "")}, timeout=10)
        if cached.status_code == 304:
            log_check(metadata["filePath"], "GET", "PASS", "ETag revalidation returned 304")
        else:
            log_check(metadata["filePath"], "GET", "FAIL", f"Revalidation status: {cached.status_code}", "error")

        missing = requests.get(f"{BASE_URL}/media/{'0' * 32}", timeout=10)
        if missing.status_code == 404:
            log_check("/media/<unknown>", "GET", "PASS", "Unknown id returns 404")
        else:
            log_check("/media/<unknown>", "GET", "FAIL", f"Status: {missing.status_code}", "error")
    except requests.RequestException as e:
        log_check(metadata["filePath"], "GET", "FAIL", f"Exception: {e}", "error")


def check_delete(metadata):
    print("\n=== Delete ===")
    if not metadata:
        return
    try:
        response = requests.delete(f"{BASE_URL}{metadata['filePath']}", timeout=10)
        if response.status_code == 204:
            log_check(metadata["filePath"], "DELETE", "PASS", "Clip removed")
        else:
            log_check(metadata["filePath"], "DELETE", "FAIL", f"Status: {response.status_code}", "error")
    except requests.RequestException as e:
        log_check(metadata["filePath"], "DELETE", "FAIL", f"Exception: {e}", "error")


def main():
    print(f"Base URL: {BASE_URL}")
    print("=" * 80)

    check_health()
    metadata = check_upload()
    check_rejected_upload()
    check_media(metadata)
    check_delete(metadata)

    failed = sum(1 for r in check_results if r.status == "FAIL")
    critical = sum(1 for r in check_results if r.severity == "critical")
    print(f"\n{len(check_results)} checks, {failed} failed")

    if critical > 0:
        return 2
    if failed > 0:
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
