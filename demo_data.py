"""Pre-baked expansions served when the live service is off or rationed."""

from __future__ import annotations

from node_models import canonical_label

DEMO_RECORDS: dict[str, dict[str, object]] = {
    "finance": {
        "description": "How money flows and is managed: earning, saving, investing, borrowing, and risk.",
        "subcategories": [
            {
                "name": "Personal Finance",
                "description": "Managing individual or family money, including budgeting, saving, and investing.",
            },
            {
                "name": "Corporate Finance",
                "description": "How businesses manage funds, make investments, and maximize shareholder value.",
            },
            {
                "name": "Investment",
                "description": "Growing wealth through stocks, bonds, real estate, and other financial instruments.",
            },
        ],
    },
    "technology": {
        "description": "The application of scientific knowledge for practical purposes, especially in industry and daily life.",
        "subcategories": [
            {
                "name": "Artificial Intelligence",
                "description": "Systems that can simulate human intelligence and perform tasks like learning and problem-solving.",
            },
            {
                "name": "Cloud Computing",
                "description": "Delivery of computing services over the internet, including storage, processing, and software.",
            },
            {
                "name": "Cybersecurity",
                "description": "Protection of computer systems and networks from information disclosure and theft.",
            },
        ],
    },
}

GENERIC_RECORD: dict[str, object] = {
    "description": "An overview of {subject}: what it is, how it works, and where it is used.",
    "subcategories": [
        {"name": "{subject} Foundations", "description": "The core ideas and vocabulary behind {subject}."},
        {"name": "{subject} in Practice", "description": "How {subject} is carried out day to day."},
        {"name": "{subject} Applications", "description": "Where {subject} makes a difference and why it matters."},
    ],
}


def demo_record(subject: str) -> dict[str, object]:
    """Return a ``{subject, description, subcategories}`` mapping for ``subject``.

    Unknown subjects get the generic record filled in with the subject text.
    """
    title = subject.strip() or "This topic"
    record = DEMO_RECORDS.get(canonical_label(subject))
    if record is not None:
        return {
            "subject": title,
            "description": record["description"],
            "subcategories": [dict(item) for item in record["subcategories"]],  # type: ignore[union-attr]
        }
    return {
        "subject": title,
        "description": str(GENERIC_RECORD["description"]).format(subject=title),
        "subcategories": [
            {key_name: value.format(subject=title) for key_name, value in item.items()}
            for item in GENERIC_RECORD["subcategories"]  # type: ignore[union-attr]
        ],
    }
