"""
Analysis trigger policy.

Decides, right after a message append, whether a conversation should be
(re-)analyzed. Depends only on its two inputs so it can be re-derived at
any time.
"""

# First analysis waits until the conversation has some substance
FIRST_ANALYSIS_MIN_MESSAGES = 3

# Periodic refresh every N messages, even when an analysis exists
REFRESH_INTERVAL = 10


def should_analyze(message_count: int, has_current_analysis: bool) -> bool:
    """
    Decide whether to run analysis after an append.

    Args:
        message_count: Message count after the append
        has_current_analysis: Whether the conversation already has a result

    Returns:
        True for the first analysis at three or more messages, and for every
        multiple of ten messages regardless of existing analysis
    """
    if message_count > 0 and message_count % REFRESH_INTERVAL == 0:
        return True
    return message_count >= FIRST_ANALYSIS_MIN_MESSAGES and not has_current_analysis


def analysis_cycle(message_count: int) -> int:
    """Index of the periodic-refresh cycle a conversation is currently in."""
    return message_count // REFRESH_INTERVAL
