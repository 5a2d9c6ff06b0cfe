"""
Property-based tests for the streaming query event order.

Exactly one sources event comes first, tokens follow in generation order and
the done event is last.
"""

import json

from fastapi.testclient import TestClient
from hypothesis import HealthCheck, given, settings, strategies as st

token_scripts = st.lists(st.text(min_size=1, max_size=8), max_size=15)
source_lists = st.lists(st.sampled_from(["a.pdf", "b.txt", "c.pdf"]), max_size=5)


def parse_sse(body):
    return [json.loads(block[len("data: "):]) for block in body.split("\n\n") if block.startswith("data: ")]


@given(token_scripts, source_lists)
@settings(max_examples=25, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture])
def test_stream_event_order(rag_app_factory, tokens, sources):
    results = [
        {"id": str(i), "content": "text", "metadata": {"source": source}}
        for i, source in enumerate(sources)
    ]
    app, _, _ = rag_app_factory(results=results, tokens=tuple(tokens), context_chunks=5)

    events = parse_sse(TestClient(app).post("/api/rag/stream", json={"query": "q"}).text)

    assert [e["type"] for e in events].count("sources") == 1
    assert events[0]["type"] == "sources"
    assert events[0]["sources"] == list(dict.fromkeys(sources))
    assert [e["text"] for e in events[1:-1]] == tokens
    assert all(not e["done"] for e in events[1:-1])
    assert events[-1] == {"type": "token", "text": "", "done": True}
