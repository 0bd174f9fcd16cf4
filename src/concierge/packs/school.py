"""Built-in School pack: school events, early releases, conferences."""

from concierge.packs.models import (
    AttachmentIndicator,
    KeywordSet,
    Pack,
    PackDefaults,
    PlatformDetector,
    SenderPattern,
)

SCHOOL_PACK = Pack(
    id="school",
    name="School",
    version="1.0.0",
    description="Extracts school events, early releases, conferences, and activities",
    priority=80,
    sender_patterns=(
        SenderPattern("domain", "schoolloop.com", 0.95, "SchoolLoop communication platform"),
        SenderPattern("domain", "parentsquare.com", 0.95, "ParentSquare school messaging"),
        SenderPattern("domain", "remindhq.com", 0.9, "Remind app notifications"),
        SenderPattern("domain", ".edu", 0.7, "Educational institution domains"),
        SenderPattern("domain", "k12", 0.75, "K-12 school systems"),
        SenderPattern("regex", "principal|teacher|school|district", 0.6, "School staff in sender name"),
    ),
    keyword_sets=(
        KeywordSet(
            category="event_types",
            keywords=(
                "early release",
                "early dismissal",
                "parent-teacher conference",
                "field trip",
                "school assembly",
                "picture day",
                "back to school",
                "open house",
                "school play",
                "science fair",
                "spelling bee",
                "sports day",
                "winter concert",
                "spring concert",
                "graduation",
                "orientation",
                "school closure",
                "minimum day",
                "half day",
            ),
            confidence=0.85,
        ),
        KeywordSet(
            category="time_indicators",
            keywords=(
                "dismissal",
                "pickup",
                "drop-off",
                "starts at",
                "begins at",
                "ends at",
                "due date",
                "deadline",
                "rsvp by",
            ),
            confidence=0.75,
            context="body",
        ),
        KeywordSet(
            category="action_required",
            keywords=(
                "sign up",
                "permission slip",
                "forms due",
                "register",
                "enrollment",
                "volunteer",
                "rsvp",
                "confirmation required",
            ),
            confidence=0.8,
        ),
    ),
    platform_detectors=(
        PlatformDetector(
            name="SignupGenius",
            confidence=0.95,
            domains=("signupgenius.com",),
            body_patterns=("SignUpGenius", "sign up genius"),
        ),
        PlatformDetector(
            name="ParentSquare",
            confidence=0.95,
            domains=("parentsquare.com",),
            headers=(("X-Mailer", "ParentSquare"),),
        ),
        PlatformDetector(
            name="SchoolMessenger",
            confidence=0.9,
            domains=("schoolmessenger.com", "westnotification.com"),
        ),
        PlatformDetector(name="Remind", confidence=0.9, domains=("remindhq.com", "remind.com")),
        PlatformDetector(name="Konstella", confidence=0.9, domains=("konstella.com",)),
    ),
    attachment_indicators=(
        AttachmentIndicator("ics", ("text/calendar",), ("*.ics",), extractable=True),
        AttachmentIndicator("pdf", ("application/pdf",), ("*.pdf",), extractable=False),
    ),
    defaults=PackDefaults(
        source_name="School Communications",
        label="School/Events",
        duration_minutes=60,
        reminder_minutes=(1440, 60),
        color="10",
        fallback_time="09:00",
        forwarding_subject_prefix="[School Info] ",
    ),
)
