"""Built-in Activities pack: sports, music lessons, clubs."""

from concierge.packs.models import (
    AttachmentIndicator,
    KeywordSet,
    Pack,
    PackDefaults,
    SenderPattern,
)

ACTIVITIES_PACK = Pack(
    id="activities",
    name="Activities",
    version="1.0.0",
    description="Extracts extracurricular activity events: sports, music lessons, clubs, etc.",
    priority=70,
    sender_patterns=(
        SenderPattern("domain", "swimschool", 0.9, "Swim school communications"),
        SenderPattern("domain", "music", 0.8, "Music school/lessons"),
        SenderPattern("domain", "piano", 0.85, "Piano lessons"),
        SenderPattern("domain", "dance", 0.85, "Dance school"),
        SenderPattern("domain", "soccer", 0.85, "Soccer club"),
        SenderPattern("domain", "sports", 0.8, "Sports organizations"),
        SenderPattern("domain", "club", 0.7, "Club activities"),
    ),
    keyword_sets=(
        # Activity types are this pack's event types and feed the relevance gate
        KeywordSet(
            category="event_types",
            keywords=(
                "lesson",
                "class",
                "practice",
                "recital",
                "performance",
                "game",
                "match",
                "tournament",
                "competition",
                "rehearsal",
                "swim",
                "swimming",
                "piano",
                "music",
                "dance",
                "soccer",
                "basketball",
                "baseball",
                "gymnastics",
                "martial arts",
                "karate",
                "ballet",
            ),
            confidence=0.8,
        ),
        KeywordSet(
            category="time_indicators",
            keywords=(
                "lesson time",
                "class time",
                "practice time",
                "starts at",
                "begins at",
                "schedule",
                "canceled",
                "cancelled",
                "rescheduled",
                "makeup",
                "make-up",
            ),
            confidence=0.75,
            context="body",
        ),
        KeywordSet(
            category="action_required",
            keywords=(
                "sign up",
                "register",
                "enroll",
                "registration",
                "payment due",
                "tuition",
                "recital tickets",
                "costume",
                "uniform",
            ),
            confidence=0.8,
        ),
    ),
    attachment_indicators=(
        AttachmentIndicator("ics", ("text/calendar",), ("*.ics",), extractable=True),
    ),
    defaults=PackDefaults(
        source_name="Activities",
        label="Activities",
        duration_minutes=60,
        reminder_minutes=(60, 30),
        color="7",
        fallback_time="15:00",
        forwarding_subject_prefix="[Activity] ",
    ),
)
