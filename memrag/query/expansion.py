"""
Query Expansion
----------------
Enriches a query with synonyms and related terms to improve recall.

  rule_based  dictionary lookup per token (fast, always runs)
  hybrid      rule-based result merged with an LLM expansion, used for
              complex queries when LLM expansion is enabled and configured

Limits:
  - first MAX_SYNONYMS_PER_TERM dictionary entries are synonyms, the rest
    are related terms
  - the expanded string is the query + at most MAX_EXPANSION_TERMS terms
  - precise queries (file names, line numbers, identifiers, versions, SHAs)
    get at most 5 terms, 1 synonym per token, no related or intent terms
"""
from __future__ import annotations

import re
from typing import Literal, Optional

from loguru import logger
from pydantic import BaseModel, Field

from memrag.query.llm import JsonLLM

MAX_EXPANSION_TERMS = 15
MAX_SYNONYMS_PER_TERM = 3
MAX_INTENT_TERMS = 3
PRECISE_MAX_TERMS = 5
HYBRID_MAX_TERMS = 20

ExpansionMethod = Literal["rule_based", "llm", "hybrid"]

EXPANSION_DICTIONARY: dict[str, list[str]] = {
    # auth
    "auth": ["authentication", "authorization", "login", "logout", "session", "JWT", "token", "OAuth", "SSO"],
    "login": ["authentication", "sign in", "signin", "auth", "session"],
    "logout": ["sign out", "signout", "session", "auth"],
    "jwt": ["JSON Web Token", "token", "authentication", "bearer"],
    "oauth": ["authentication", "SSO", "provider", "social login"],
    "session": ["authentication", "cookie", "token", "user state"],
    "mfa": ["multi-factor", "two-factor", "2FA", "authentication", "security"],
    # database
    "db": ["database", "postgres", "postgresql", "supabase", "sql", "query", "table"],
    "database": ["postgres", "sql", "table", "schema", "migration"],
    "rls": ["row level security", "RLS", "policy", "policies", "permission", "access control"],
    "policy": ["RLS", "row level security", "permission", "access"],
    "migration": ["schema", "database", "alter", "create table", "sql", "DDL"],
    "sql": ["query", "postgres", "database", "select", "insert", "update"],
    "table": ["schema", "database", "columns", "rows", "records"],
    "schema": ["database", "table", "migration", "DDL"],
    "query": ["sql", "select", "database", "fetch"],
    "postgres": ["postgresql", "database", "sql", "supabase"],
    "postgis": ["geography", "geometry", "spatial", "coordinates", "ST_Distance", "geospatial"],
    "spatial": ["PostGIS", "geography", "geometry", "coordinates", "distance"],
    "row level security": ["RLS", "policy", "permission", "access control"],
    # frontend
    "ui": ["user interface", "component", "frontend", "react", "tsx", "design", "layout"],
    "component": ["react", "tsx", "ui", "frontend", "render", "props"],
    "frontend": ["react", "ui", "component", "client", "browser"],
    "react": ["component", "hook", "state", "props", "tsx", "jsx"],
    "hook": ["useEffect", "useState", "custom hook", "react"],
    "state": ["useState", "store", "zustand", "react query", "TanStack"],
    "modal": ["dialog", "popup", "overlay", "component"],
    "animation": ["framer motion", "transition", "motion", "animate", "spring"],
    "tailwind": ["css", "utility classes", "styling", "className", "responsive"],
    "theme": ["dark mode", "light mode", "colors", "design system", "styling"],
    # api
    "api": ["endpoint", "REST", "route", "handler", "function", "edge function"],
    "endpoint": ["api", "route", "handler", "REST"],
    "edge": ["edge function", "serverless", "supabase function", "deno"],
    "function": ["edge function", "serverless", "handler", "supabase"],
    "serverless": ["edge function", "lambda", "function"],
    "webhook": ["callback", "http post", "event", "endpoint"],
    "edge function": ["serverless", "deno", "supabase function", "handler"],
    # devops
    "deploy": ["deployment", "vercel", "production", "build", "release", "ci/cd"],
    "deployment": ["deploy", "release", "production", "vercel", "hosting"],
    "build": ["compile", "bundle", "vite", "typescript", "tsc", "production"],
    "vercel": ["deployment", "hosting", "serverless", "edge", "production"],
    "docker": ["container", "image", "dockerfile", "compose"],
    "ci": ["continuous integration", "github actions", "pipeline", "build"],
    "cd": ["continuous deployment", "release", "pipeline", "deploy"],
    "production": ["prod", "live", "deployment", "release"],
    "staging": ["preview", "test environment", "pre-production"],
    # debugging
    "error": ["exception", "bug", "issue", "fail", "crash", "problem", "stack trace"],
    "bug": ["error", "issue", "fix", "debug", "problem", "defect"],
    "debug": ["troubleshoot", "fix", "investigate", "log", "console", "breakpoint"],
    "fix": ["bug", "patch", "resolve", "repair", "solution"],
    "crash": ["error", "exception", "fail", "bug"],
    "issue": ["bug", "problem", "error", "ticket"],
    "log": ["console", "debug", "trace", "print", "observability"],
    "stack trace": ["traceback", "exception", "error", "call stack"],
    # testing
    "test": ["testing", "unit test", "integration", "pytest", "vitest", "spec"],
    "testing": ["test", "unit", "integration", "e2e", "spec"],
    "unit": ["test", "pytest", "vitest", "spec", "assertion"],
    "integration": ["test", "e2e", "end to end"],
    "e2e": ["end to end", "integration", "playwright", "cypress"],
    # geo / maps
    "map": ["mapbox", "location", "marker", "geolocation", "coordinates"],
    "marker": ["pin", "point", "icon", "location", "mapbox marker"],
    "location": ["coordinates", "geolocation", "lat", "lng", "position", "place"],
    "coordinates": ["lat", "lng", "latitude", "longitude", "position", "geolocation"],
    "geolocation": ["GPS", "location", "coordinates", "position", "navigator"],
    "radius": ["distance", "range", "within", "nearby", "miles", "kilometers"],
    # memory system
    "memory": ["pinecone", "rag", "vector", "embedding", "retrieval", "knowledge"],
    "rag": ["retrieval augmented generation", "memory", "vector", "semantic search"],
    "vector": ["embedding", "pinecone", "semantic", "similarity"],
    "embedding": ["vector", "openai", "semantic", "dense"],
    "retrieval": ["search", "query", "fetch", "rag"],
    "pinecone": ["vector", "embedding", "semantic search", "rag", "index"],
    "rerank": ["cohere", "relevance", "score", "ranking", "retrieval"],
    "chunk": ["chunking", "segment", "split", "window", "overlap"],
    "ingest": ["ingestion", "import", "process", "pipeline", "upload"],
    "sparse": ["bm25", "keyword", "lexical", "sparse embedding"],
    "dense": ["semantic", "vector", "embedding", "dense vector"],
    "alpha": ["hybrid", "balance", "weight", "semantic ratio"],
    "decay": ["recency", "time decay", "age", "freshness"],
    "boost": ["weight", "priority", "importance", "score boost"],
    "evaluation": ["eval", "metrics", "MRR", "precision", "recall"],
    "pipeline": ["flow", "process", "stages", "steps", "workflow"],
    "fallback": ["backup", "failover", "alternative", "default"],
    "timeout": ["delay", "latency", "slow", "hang", "freeze"],
    "rate limit": ["throttle", "429", "quota", "backoff"],
    "circuit breaker": ["fallback", "failover", "open circuit", "resilience"],
    # tools
    "claude": ["anthropic", "ai", "llm", "assistant"],
    "anthropic": ["claude", "ai", "llm"],
    "openai": ["gpt", "embedding", "ai", "llm"],
    "supabase": ["database", "postgres", "auth", "storage", "edge function", "realtime"],
    "mapbox": ["map", "tiles", "geolocation", "markers", "gl js"],
    "github": ["git", "repository", "commit", "pr", "pull request"],
    "datadog": ["monitoring", "logs", "observability", "metrics", "tracing"],
    "cohere": ["rerank", "reranking", "retrieval", "semantic", "nlp"],
    "redis": ["cache", "key value", "in-memory", "pubsub"],
    "graphql": ["query", "schema", "resolver", "api"],
    # mobile
    "capacitor": ["native", "ios", "android", "mobile", "app", "hybrid"],
    "ios": ["iPhone", "iPad", "Apple", "Swift", "mobile"],
    "android": ["mobile", "Google", "Kotlin", "app"],
    "mobile": ["ios", "android", "capacitor", "responsive", "touch"],
    "pwa": ["progressive web app", "installable", "offline", "service worker"],
    "responsive": ["mobile", "breakpoint", "adaptive", "viewport", "media query"],
    # realtime
    "realtime": ["websocket", "subscription", "live", "sync", "push", "supabase realtime"],
    "websocket": ["realtime", "socket", "connection", "live", "push"],
    "subscription": ["realtime", "subscribe", "listen", "channel", "broadcast"],
    "sync": ["synchronize", "realtime", "update", "refresh"],
    "notification": ["alert", "push", "inbox", "update", "realtime"],
    # config
    "config": ["configuration", "settings", "environment", "env", "options"],
    "env": ["environment", "variable", "config", ".env"],
    "settings": ["config", "preferences", "options"],
    # performance
    "performance": ["speed", "optimization", "latency", "cache", "slow"],
    "cache": ["caching", "redis", "memory", "performance", "stale"],
    "optimization": ["performance", "speed", "efficient"],
    "slow": ["performance", "latency", "optimization", "bottleneck"],
    "latency": ["delay", "response time", "performance", "slow"],
    # security
    "security": ["vulnerability", "auth", "rls", "permission", "access"],
    "vulnerability": ["security", "exploit", "risk", "CVE"],
    "permission": ["access", "rls", "policy", "authorization"],
    "access": ["permission", "authorization", "rls", "control"],
}

INTENT_EXPANSION_TERMS: dict[str, list[str]] = {
    "debugging": ["error", "bug", "issue", "fix", "crash", "exception", "stack trace", "log"],
    "procedural": ["how to", "implement", "create", "build", "setup", "configure", "steps", "guide"],
    "history": ["when", "changed", "updated", "modified", "added", "removed", "previous", "last"],
    "factual": ["what", "which", "where", "definition", "explanation"],
    "comparison": ["vs", "versus", "difference", "compare", "better", "alternative"],
    "exploration": ["overview", "about", "general", "introduction"],
}

PRECISE_QUERY_PATTERNS: tuple[re.Pattern, ...] = (
    re.compile(r"^[a-zA-Z_]+\.(ts|tsx|js|py|sql|json)$", re.IGNORECASE),  # exact filename
    re.compile(r"line \d+", re.IGNORECASE),
    re.compile(r"error code \d+", re.IGNORECASE),
    re.compile(r"^[a-z_]+_[a-z_]+$", re.IGNORECASE),                      # snake_case identifier
    re.compile(r"^[A-Z][a-zA-Z]+\.[a-zA-Z]+\(\)$"),                        # Class.method()
    re.compile(r"^v\d+\.\d+", re.IGNORECASE),                              # version
    re.compile(r"sha[:\s]+[a-f0-9]{7,}", re.IGNORECASE),                   # git SHA
)

_MULTI_WORD_KEYS = tuple(key for key in EXPANSION_DICTIONARY if " " in key)

_LLM_INDICATORS: tuple[re.Pattern, ...] = (
    re.compile(r"\b(how|what|why|when|where|which)\b.*\?$", re.IGNORECASE),
    re.compile(r"\b(and|also|plus|as well as)\b", re.IGNORECASE),
    re.compile(r"\b(not|without|except|excluding)\b", re.IGNORECASE),
    re.compile(r"\b(vs|versus|compared to|difference between)\b", re.IGNORECASE),
)

EXPANSION_SYSTEM_PROMPT = """\
You are a query expansion assistant for a software development memory system.
Given a query, output ONLY a valid JSON object with these fields:
- synonyms: array of 2-5 synonym terms (words/phrases that mean the same thing)
- related_terms: array of 3-8 related technical concepts
- detected_entities: array of specific technologies, files, features, or concepts mentioned

Be concise. Focus on software development context. Output ONLY JSON, no explanation.

Example input: "auth bug"
Example output: {"synonyms":["authentication error","login issue"],"related_terms":["JWT","session","token","RLS","security"],"detected_entities":["authentication"]}"""


class ExpandedQuery(BaseModel):
    original: str
    expanded: str
    synonyms: list[str] = Field(default_factory=list)
    related_terms: list[str] = Field(default_factory=list)
    detected_entities: list[str] = Field(default_factory=list)
    expansion_method: ExpansionMethod = "rule_based"

    @property
    def added_terms(self) -> int:
        return len(self.synonyms) + len(self.related_terms)


# --- Rule-based ---------------------------------------------------------------

def tokenize(query: str) -> list[str]:
    return [w for w in re.sub(r"[^\w\s]", " ", query.lower()).split() if len(w) > 1]


def is_precise_query(query: str) -> bool:
    query = query.strip()
    return any(p.search(query) for p in PRECISE_QUERY_PATTERNS)


def detect_simple_intent(query: str) -> str:
    """Lightweight intent guess used only to pick intent expansion terms."""
    if re.search(r"\b(error|bug|issue|crash|fail|exception|broken|not working)\b", query, re.IGNORECASE):
        return "debugging"
    if re.search(r"^how (do|did|can|to|should)\b", query, re.IGNORECASE) or re.search(
        r"\b(implement|create|build|setup)\b", query, re.IGNORECASE
    ):
        return "procedural"
    if re.search(r"^when (did|was|were)\b", query, re.IGNORECASE) or re.search(
        r"\b(last|previous|changed|history)\b", query, re.IGNORECASE
    ):
        return "history"
    if re.search(r"\b(vs|versus|compared? to|difference between|better than)\b", query, re.IGNORECASE):
        return "comparison"
    if re.search(r"^(what|which|where)\b.*\?$", query, re.IGNORECASE):
        return "factual"
    return "exploration"


def _build_expanded(query: str, terms: list[str], limit: int) -> str:
    chosen = terms[:limit]
    return f"{query} {' '.join(chosen)}" if chosen else query


def apply_rule_based_expansion(
    query: str,
    include_intent_terms: bool = True,
    respect_precise_queries: bool = True,
) -> ExpandedQuery:
    precise = respect_precise_queries and is_precise_query(query)
    max_terms = PRECISE_MAX_TERMS if precise else MAX_EXPANSION_TERMS
    max_synonyms = 1 if precise else MAX_SYNONYMS_PER_TERM

    # dicts keep first-seen order
    synonyms: dict[str, None] = {}
    related: dict[str, None] = {}
    entities: dict[str, None] = {}

    for token in tokenize(query):
        expansions = EXPANSION_DICTIONARY.get(token)
        if not expansions:
            continue
        synonyms.update(dict.fromkeys(expansions[:max_synonyms]))
        if not precise:
            related.update(dict.fromkeys(expansions[max_synonyms:]))
        entities[token] = None

    lowered = query.lower()
    for key in _MULTI_WORD_KEYS:
        if key in lowered:
            if not precise:
                related.update(dict.fromkeys(EXPANSION_DICTIONARY[key]))
            entities[key] = None

    if include_intent_terms and not precise:
        for term in INTENT_EXPANSION_TERMS[detect_simple_intent(query)][:MAX_INTENT_TERMS]:
            if term not in synonyms:
                related[term] = None

    return ExpandedQuery(
        original=query,
        expanded=_build_expanded(query, [*synonyms, *related], max_terms),
        synonyms=list(synonyms),
        related_terms=list(related),
        detected_entities=list(entities),
        expansion_method="rule_based",
    )


# --- LLM ------------------------------------------------------------------------

def should_use_llm(query: str, rule_based: Optional[ExpandedQuery] = None) -> bool:
    """Complex queries (questions, multi-clause, long, negated, comparative) or no rule hits."""
    if any(p.search(query) for p in _LLM_INDICATORS) or len(query.split()) > 10:
        return True
    rule_based = rule_based or apply_rule_based_expansion(query)
    return not rule_based.synonyms and not rule_based.related_terms


def _string_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if str(v).strip()]


def merge_expansions(rule_based: ExpandedQuery, llm_payload: dict) -> ExpandedQuery:
    synonyms = dict.fromkeys([*rule_based.synonyms, *_string_list(llm_payload.get("synonyms"))])
    related = dict.fromkeys(
        t
        for t in [*rule_based.related_terms, *_string_list(llm_payload.get("related_terms"))]
        if t not in synonyms
    )
    entities = dict.fromkeys(
        [*rule_based.detected_entities, *_string_list(llm_payload.get("detected_entities"))]
    )
    return ExpandedQuery(
        original=rule_based.original,
        expanded=_build_expanded(rule_based.original, [*synonyms, *related], HYBRID_MAX_TERMS),
        synonyms=list(synonyms),
        related_terms=list(related),
        detected_entities=list(entities),
        expansion_method="hybrid",
    )


class QueryExpander:
    """
    Rule-based expansion, upgraded to hybrid for complex queries when an LLM
    is configured and enabled. LLM failures fall back to the rule-based result.
    """

    def __init__(self, llm: Optional[JsonLLM] = None, llm_enabled: bool = False) -> None:
        self.llm = llm
        self.llm_enabled = llm_enabled

    async def expand(self, query: str, force_llm: bool = False) -> ExpandedQuery:
        rule_based = apply_rule_based_expansion(query)
        if self.llm is None or not (force_llm or (self.llm_enabled and should_use_llm(query, rule_based))):
            return rule_based

        try:
            payload = await self.llm.complete_json(EXPANSION_SYSTEM_PROMPT, query, max_tokens=300)
        except Exception as exc:
            logger.warning(f"[QueryExpander] LLM expansion failed, using rule-based only: {exc}")
            return rule_based

        merged = merge_expansions(rule_based, payload)
        logger.debug(
            f"[QueryExpander] hybrid expansion: {len(merged.synonyms)} synonyms, "
            f"{len(merged.related_terms)} related"
        )
        return merged
