"""
Display levels for the statistics panel. Thresholds come from config so they can change without touching the engine.
"""

GOOD = "good"
WARN = "warn"
BAD = "bad"


def rate_level(rate, settings):
    if rate >= settings.rate_good_threshold:
        return GOOD
    if rate >= settings.rate_warn_threshold:
        return WARN
    return BAD


def count_level(count, settings):
    if count <= 0:
        return GOOD
    if count <= settings.count_warn_max:
        return WARN
    return BAD


def statistics_levels(stats, settings):
    """Level per displayed metric, keyed like AttendanceStatistics.to_dict()."""
    return {
        "attendanceRate": rate_level(stats.attendance_rate, settings),
        "lateCount": count_level(stats.late_count, settings),
        "earlyLeaveCount": count_level(stats.early_leave_count, settings),
        "absentCount": count_level(stats.absent_count, settings),
    }
