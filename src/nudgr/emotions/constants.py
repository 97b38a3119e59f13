"""The fixed emotion vocabulary a user can log before or after a task."""

from enum import Enum


class Emotion(str, Enum):
    # Positive
    EXCITED = "excited"
    OPTIMISTIC = "optimistic"
    MOTIVATED = "motivated"
    CONFIDENT = "confident"
    HOPEFUL = "hopeful"
    ENERGIZED = "energized"
    CONTENT = "content"
    PROUD = "proud"
    INSPIRED = "inspired"
    PRODUCTIVE = "productive"
    CURIOUS = "curious"
    CALM = "calm"
    FOCUSED = "focused"

    # Neutral / mixed
    NEUTRAL = "neutral"
    INDIFFERENT = "indifferent"
    MEH = "meh"
    CONFLICTED = "conflicted"
    UNCERTAIN = "uncertain"
    OVERWHELMED = "overwhelmed"
    HESITANT = "hesitant"
    AMBIVALENT = "ambivalent"

    # Negative
    ANXIOUS = "anxious"
    STRESSED = "stressed"
    TIRED = "tired"
    BURNED_OUT = "burned_out"
    FRUSTRATED = "frustrated"
    ANGRY = "angry"
    ANNOYED = "annoyed"
    IRRITATED = "irritated"
    HOPELESS = "hopeless"
    FEARFUL = "fearful"
    NERVOUS = "nervous"
    DREADING = "dreading"
    DISCOURAGED = "discouraged"
    INSECURE = "insecure"

    # Anticipatory
    WORRIED = "worried"
    APPREHENSIVE = "apprehensive"
    EAGER = "eager"

    # Avoidance / resistance
    AVOIDANT = "avoidant"
    PROCRASTINATING = "procrastinating"
    RESISTANT = "resistant"
    STUCK = "stuck"
    HESITATING = "hesitating"


POSITIVE_EMOTIONS = frozenset(
    {
        Emotion.EXCITED,
        Emotion.OPTIMISTIC,
        Emotion.MOTIVATED,
        Emotion.CONFIDENT,
        Emotion.HOPEFUL,
        Emotion.ENERGIZED,
        Emotion.CONTENT,
        Emotion.PROUD,
        Emotion.INSPIRED,
        Emotion.PRODUCTIVE,
        Emotion.CURIOUS,
        Emotion.CALM,
        Emotion.FOCUSED,
    }
)


class Phase(str, Enum):
    BEFORE = "before"
    AFTER = "after"


RECENT_EMOTIONS_LIMIT = 10
# Logs compared per half when classifying the recent trend.
TREND_WINDOW = 5
