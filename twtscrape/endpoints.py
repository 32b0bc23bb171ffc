from __future__ import annotations

import json
from typing import Any

import httpx

from .config_schema import HttpConfig
from .query import Cursor, Query, QueryMode

GUEST_ACTIVATE_PATH = "/1.1/guest/activate.json"
ADAPTIVE_SEARCH_PATH = "/2/search/adaptive.json"

_GRAPHQL_FEATURES: dict[str, bool] = {
    "responsive_web_twitter_blue_verified_badge_is_enabled": True,
    "verified_phone_label_enabled": False,
    "responsive_web_graphql_timeline_navigation_enabled": True,
    "unified_cards_ad_metadata_container_dynamic_card_content_query_enabled": True,
    "tweetypie_unmention_optimization_enabled": True,
    "responsive_web_uc_gql_enabled": True,
    "vibe_api_enabled": True,
    "responsive_web_edit_tweet_api_enabled": True,
    "graphql_is_translatable_rweb_tweet_is_translatable_enabled": True,
    "standardized_nudges_misinfo": True,
    "tweet_with_visibility_results_prefer_gql_limited_actions_policy_enabled": False,
    "interactive_text_enabled": True,
    "responsive_web_text_conversations_enabled": False,
    "responsive_web_enhance_cards_enabled": True,
}


def _compact_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=False)


def build_http_client(http: HttpConfig) -> httpx.Client:
    return httpx.Client(
        timeout=http.request_timeout_seconds,
        proxy=http.proxy,
        verify=http.verify_tls,
        follow_redirects=True,
    )


def guest_activate_url(http: HttpConfig) -> str:
    return f"{http.api_base_url}{GUEST_ACTIVATE_PATH}"


def graphql_url(http: HttpConfig, operation: str) -> str:
    query_id = http.graphql_query_ids.get(operation)
    if not query_id:
        raise KeyError(f"No GraphQL query id configured for {operation}")
    return f"{http.base_url}/i/api/graphql/{query_id}/{operation}"


def user_lookup_request(http: HttpConfig, handle: str) -> tuple[str, dict[str, str]]:
    variables = {
        "screen_name": handle,
        "withSafetyModeUserFields": True,
        "withSuperFollowsUserFields": True,
    }
    params = {
        "variables": _compact_json(variables),
        "features": _compact_json(_GRAPHQL_FEATURES),
    }
    return graphql_url(http, "UserByScreenName"), params


def page_request(
    http: HttpConfig,
    query: Query,
    cursor: Cursor | None,
    *,
    user_id: int | None = None,
) -> tuple[str, dict[str, str]]:
    """
    URL and query-string parameters for one result page of `query`.

    User-timeline pages need the numeric user ID; pass it when the query carries a handle.
    """
    if query.mode is QueryMode.SEARCH:
        params: dict[str, str] = {
            "q": query.identifier,
            "count": str(http.page_size),
            "tweet_mode": "extended",
            "query_source": "typed_query",
            "pc": "1",
            "spelling_corrections": "1",
            "include_quote_count": "true",
            "include_reply_count": "1",
        }
        if cursor is not None:
            params["cursor"] = cursor.value
        return f"{http.api_base_url}{ADAPTIVE_SEARCH_PATH}", params

    if query.mode is QueryMode.USER_TIMELINE:
        uid = user_id if user_id is not None else query.user_id()
        if uid is None:
            raise ValueError("user-timeline pages need a numeric user id")
        variables: dict[str, Any] = {
            "userId": str(uid),
            "count": http.page_size,
            "includePromotedContent": False,
            "withCommunity": True,
            "withSuperFollowsUserFields": True,
            "withDownvotePerspective": False,
            "withReactionsMetadata": False,
            "withReactionsPerspective": False,
            "withSuperFollowsTweetFields": True,
            "withVoice": True,
            "withV2Timeline": True,
        }
        operation = "UserTweetsAndReplies"
    else:
        variables = {
            "focalTweetId": query.identifier,
            "with_rux_injections": False,
            "includePromotedContent": False,
            "withCommunity": True,
            "withQuickPromoteEligibilityTweetFields": False,
            "withBirdwatchNotes": False,
            "withSuperFollowsUserFields": True,
            "withDownvotePerspective": False,
            "withReactionsMetadata": False,
            "withReactionsPerspective": False,
            "withSuperFollowsTweetFields": True,
            "withVoice": True,
            "withV2Timeline": True,
        }
        operation = "TweetDetail"

    if cursor is not None:
        variables["cursor"] = cursor.value

    params = {
        "variables": _compact_json(variables),
        "features": _compact_json(_GRAPHQL_FEATURES),
    }
    return graphql_url(http, operation), params
