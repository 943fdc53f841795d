# http_client.py — every outbound upstream call goes through call_with_retry()
# Bounded attempts, exponential backoff with jitter, and status-based retry eligibility.

import random
import time
import logging

import requests

from config import RETRY_PROFILES, RETRYABLE_STATUS, JITTER_RATIO, HTTP_USER_AGENT

logger = logging.getLogger(__name__)


class UpstreamError(Exception):
    """Base for anything that went wrong talking to an upstream API."""

    def __init__(self, message, url=None, attempts=0, status=None, body=None):
        super().__init__(message)
        self.url      = url
        self.attempts = attempts
        self.status   = status
        self.body     = body


class NoResponseError(UpstreamError):
    """Network error or timeout — the server never answered."""


class HttpStatusError(UpstreamError):
    """The server answered with a non-2xx status."""

    @property
    def retryable(self):
        return is_retryable_status(self.status)


class RequestSetupError(UpstreamError):
    """The request could not be built or sent (bad URL, bad payload...)."""


def is_retryable_status(status):
    """4xx is terminal except 408 and 429. Everything else (5xx...) is worth another try."""
    if status in RETRYABLE_STATUS:
        return True
    return not (400 <= status < 500)


def backoff_delay(attempt, base_delay_ms, max_delay_ms, jitter=True, rand=random.random):
    """
    Seconds to wait after failed attempt number `attempt` (1-based):
        min(base * 2^(attempt-1), max), stretched by up to JITTER_RATIO when jitter is on.
    """
    delay_ms = min(base_delay_ms * (2 ** (attempt - 1)), max_delay_ms)
    if jitter:
        delay_ms *= 1 + rand() * JITTER_RATIO
    return delay_ms / 1000.0


def _body(resp):
    try:
        return resp.json()
    except ValueError:
        return resp.text[:500]


def call_with_retry(url, payload=None, max_retries=None, timeout_ms=None, *,
                    method="POST", params=None, profile="default", expect="json",
                    session=None, sleep=time.sleep, jitter=True):
    """
    Call an upstream and return its decoded body.

    max_retries counts every attempt, the first one included. Missing
    arguments come from the named retry profile in config.RETRY_PROFILES.
    expect="json" decodes the body; expect="text" returns it as a str (JavaScript-literal
    feeds); expect="bytes" returns the undecoded body so an HTML parser can honour the
    page's own <meta charset> (requests guesses ISO-8859-1 for a bare text/html).

    Raises:
        HttpStatusError    — terminal 4xx immediately, or the last non-2xx after all attempts
        NoResponseError    — the last attempt got no response (network error / timeout)
        RequestSetupError  — the last attempt could not even be sent
        UpstreamError      — a 2xx whose body was not valid JSON (not retried)
    """
    settings = RETRY_PROFILES.get(profile, RETRY_PROFILES["default"])
    attempts_allowed = max_retries if max_retries is not None else settings["max_retries"]
    timeout_ms = timeout_ms if timeout_ms is not None else settings["timeout_ms"]
    requester = session or requests
    headers = {"User-Agent": HTTP_USER_AGENT, "Accept": "application/json, text/html;q=0.9"}

    last_error = None
    for attempt in range(1, max(1, attempts_allowed) + 1):
        logger.debug(f"  → {method} {url} (attempt {attempt}/{attempts_allowed})")
        try:
            resp = requester.request(
                method, url,
                json=payload if method != "GET" else None,
                params=params,
                headers=headers,
                timeout=timeout_ms / 1000.0,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            last_error = NoResponseError(
                f"API Error: No response received from server after all retries ({e})",
                url=url, attempts=attempt,
            )
        except requests.RequestException as e:
            last_error = RequestSetupError(f"API Error: {e}", url=url, attempts=attempt)
        else:
            if 200 <= resp.status_code < 300:
                if expect == "text":
                    return resp.text
                if expect == "bytes":
                    return resp.content
                try:
                    return resp.json()
                except ValueError:
                    raise UpstreamError(
                        f"API Error: {resp.status_code} response is not valid JSON",
                        url=url, attempts=attempt, status=resp.status_code, body=resp.text[:500],
                    )

            body = _body(resp)
            last_error = HttpStatusError(
                f"API Error: {resp.status_code} - {resp.reason}. Details: {body}",
                url=url, attempts=attempt, status=resp.status_code, body=body,
            )
            if not last_error.retryable:
                logger.error(f"  ❌ {url} answered {resp.status_code}, not retrying")
                raise last_error

        if attempt < attempts_allowed:
            delay = backoff_delay(attempt, settings["base_delay_ms"], settings["max_delay_ms"], jitter)
            logger.warning(
                f"  ⚠️ Attempt {attempt}/{attempts_allowed} failed for {url}: {last_error} "
                f"— retrying in {delay:.2f}s"
            )
            sleep(delay)

    logger.error(f"  ❌ {url} failed after {attempts_allowed} attempts: {last_error}")
    raise last_error
