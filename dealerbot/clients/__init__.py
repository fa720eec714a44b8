"""Outbound HTTP: rate limiting, page fetching and the inference backend."""

from dealerbot.clients.fetcher import FetchedPage, PageFetcher, build_fetch_client
from dealerbot.clients.http_client import RateLimitedClient
from dealerbot.clients.inference import (
    InferenceClient,
    build_inference_client,
    extract_json_object,
)
from dealerbot.clients.rate_limit import RateLimiterRegistry, SlidingWindowRateLimiter

__all__ = [
    "SlidingWindowRateLimiter",
    "RateLimiterRegistry",
    "RateLimitedClient",
    "FetchedPage",
    "PageFetcher",
    "build_fetch_client",
    "InferenceClient",
    "build_inference_client",
    "extract_json_object",
]
