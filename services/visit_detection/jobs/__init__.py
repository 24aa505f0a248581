"""
Scheduled maintenance jobs for visit detection.

These run as standalone Python scripts via cron / Cloud Scheduler,
NOT inside the ingestion process.

Usage:
    python -m services.visit_detection.jobs.visit_cleanup

Schedule (UTC):
    every 15 min  visit_cleanup  close stale visits and drop stale candidates
                                 for users who stopped sending pings
"""
