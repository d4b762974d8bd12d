"""
Warehouse query text.

Every query here must return the columns event_name, event_slug and
total_sign_ups. Written for the PostgreSQL warehouse (JSON ->> operator).
"""

from __future__ import annotations

ALL_EVENT_TOTALS_QUERY = """
WITH attendees AS (
    SELECT
        LOWER(a.email) AS lower_email,
        MAX(a.email) AS max_email
    FROM "airtable_hack_club_scrapyard_appigkif7gbvisalg"."local_attendees" AS a
    GROUP BY LOWER(a.email)
),
attendee_events AS (
    SELECT DISTINCT
        LOWER(a.email) AS lower_email,
        e.name AS event_name,
        e.slug AS event_slug
    FROM "airtable_hack_club_scrapyard_appigkif7gbvisalg"."local_attendees" AS a
    LEFT JOIN "airtable_hack_club_scrapyard_appigkif7gbvisalg"."events" AS e
        ON a.event ->> 0 = e.id
    WHERE e.name IS NOT NULL AND e.slug IS NOT NULL
)
SELECT
    ae.event_name AS event_name,
    ae.event_slug AS event_slug,
    COUNT(DISTINCT att.lower_email) AS total_sign_ups
FROM attendees AS att
INNER JOIN "airtable_hack_club_scrapyard_appigkif7gbvisalg"."local_attendees" AS latest
    ON att.max_email = latest.email
INNER JOIN attendee_events AS ae
    ON att.lower_email = ae.lower_email
GROUP BY ae.event_name, ae.event_slug
HAVING COUNT(DISTINCT att.lower_email) > 0
ORDER BY ae.event_name ASC
"""
