from wa_agent.agent.summarizer import ResultSummarizer
from wa_agent.agent.tools.base import error_result

CALENDAR_RAW = {
    "status": "ok",
    "items": [
        {
            "id": "evt-1",
            "summary": "Reunión",
            "start": {"dateTime": "2026-10-19T10:00:00+02:00"},
            "end": {"dateTime": "2026-10-19T11:00:00+02:00"},
            "attendees": [{"email": "a@example.com"}] * 30,
            "description": "x" * 5000,
        },
        {
            "id": "evt-2",
            "summary": "Vacaciones",
            "start": {"date": "2026-10-24"},
            "end": {"date": "2026-10-26"},
        },
    ],
}

SEARCH_RAW = {
    "status": "ok",
    "messages": [
        {
            "id": "m1",
            "threadId": "t1",
            "snippet": "s" * 500,
            "payload": {
                "headers": [
                    {"name": "From", "value": "Ana <ana@example.com>"},
                    {"name": "Subject", "value": "Comida"},
                    {"name": "Date", "value": "Mon, 19 Oct 2026 09:00:00 +0200"},
                ]
            },
        }
    ],
}


def test_calendar_projection_keeps_ids_and_flattens_times():
    summary = ResultSummarizer().summarize("get_calendar_events", CALENDAR_RAW)

    assert summary == {
        "status": "ok",
        "events": [
            {
                "id": "evt-1",
                "title": "Reunión",
                "start": "2026-10-19T10:00:00+02:00",
                "end": "2026-10-19T11:00:00+02:00",
            },
            {"id": "evt-2", "title": "Vacaciones", "start": "2026-10-24", "end": "2026-10-26"},
        ],
        "count": 2,
    }


def test_email_search_projection():
    summary = ResultSummarizer().summarize("search_emails", SEARCH_RAW)

    message = summary["messages"][0]
    assert summary["count"] == 1
    assert message["id"] == "m1"
    assert message["from"] == "Ana <ana@example.com>"
    assert message["subject"] == "Comida"
    assert message["snippet"].startswith("s" * 200)
    assert len(message["snippet"]) < 250


def test_email_details_truncates_body():
    raw = {"status": "ok", "id": "m1", "threadId": "t1", "payload": {"headers": []}, "body": "b" * 9000}

    summary = ResultSummarizer().summarize("get_email_details", raw)

    assert summary["id"] == "m1"
    assert summary["body"].startswith("b" * 2000)
    assert "truncated" in summary["body"]


def test_summaries_are_idempotent():
    summarizer = ResultSummarizer()
    cases = {
        "get_calendar_events": CALENDAR_RAW,
        "create_calendar_event": {"status": "created", "id": "e", "summary": "T", "start": {"dateTime": "s"}},
        "search_emails": SEARCH_RAW,
        "get_email_details": {"id": "m1", "body": "b" * 9000, "payload": {"headers": []}},
        "send_email": {"status": "sent", "id": "x", "threadId": "t", "to": "a@b.c", "subject": "s"},
        "modify_email_status": {"status": "ok", "action": "trash", "id": "m1", "labelIds": ["TRASH"]},
        "unknown_tool": {"data": ["y" * 3000] * 40, "nested": {"a": {"b": {"c": {"d": {"e": 1}}}}}},
    }
    for name, raw in cases.items():
        once = summarizer.summarize(name, raw)
        assert summarizer.summarize(name, once) == once, name


def test_error_results_pass_through():
    summarizer = ResultSummarizer()
    err = error_result("Google API error (HTTP 403): forbidden")

    assert summarizer.summarize("create_calendar_event", err) == err
    assert summarizer.summarize("anything", {"status": "error", "message": "x"}) == {
        "status": "error",
        "error": True,
        "message": "x",
    }


def test_generic_projection_caps_size():
    raw = {"rows": list(range(100)), "text": "z" * 5000}

    summary = ResultSummarizer().summarize("custom_tool", raw)

    assert len(summary["rows"]) == 20
    assert summary["text"].startswith("z" * 2000)
    assert len(summary["text"]) < 2100


def test_non_dict_results_are_wrapped():
    assert ResultSummarizer().summarize("custom_tool", "hola") == {"status": "ok", "result": "hola"}


def test_custom_projection_registration():
    summarizer = ResultSummarizer()
    summarizer.register("weather", lambda raw: {"temp": raw.get("temp")})

    assert summarizer.summarize("weather", {"temp": 21, "humidity": 40}) == {"temp": 21}


def test_wrapped_lists_stay_stable_under_known_tool_names():
    summarizer = ResultSummarizer()
    raw = [{"id": "e1", "summary": "Reunión"}, {"id": "e2", "summary": "Gym"}]

    for name in ("get_calendar_events", "search_emails", "send_email", "custom_tool"):
        once = summarizer.summarize(name, raw)
        assert once == {"status": "ok", "result": raw}, name
        assert summarizer.summarize(name, once) == once, name
