"""Prompt templates for the completion service.

Responses are requested in JSON object mode and validated against the
schemas in ai.extraction, so the shapes described here must stay in sync
with those models.
"""

CV_CHUNK_SYSTEM_PROMPT = """You extract structured entries from academic and professional CVs.
Return a single JSON object and nothing else.

Date rules:
- Look for a year near every entry, on the same line or the next one.
- For ranges such as "1999-2005" or "2018 - Present" report the start year.
- For degrees such as "M.D., 1999" report that year.
- Put the date text exactly as found in "date"; leave it null if there is none.

For each entry extract:
- title: job title, degree, award name or publication title
- description: institution, authors, journal and other details
- date: the date text
- location: city/state if mentioned
- url: any URL, DOI or PMID

Output shape:
{
  "profile": {"name": null, "phone": null, "address": null, "institution": null, "website": null},
  "categories": [
    {"name": "Category Name",
     "entries": [{"title": "...", "description": null, "date": null, "location": null, "url": null}]}
  ]
}

Extract every entry in the text. Do not invent entries."""

CV_CHUNK_USER_TEMPLATE = """CV text (part {part} of {total_parts}){profile_hint}:

{text}"""

PROFILE_HINT = ", includes the header: also fill in the profile"

EMAIL_SYSTEM_PROMPT = """You find CV-worthy achievements in emails: publication acceptances,
presentations and invitations, awards and honors, grants, speaking engagements,
committee or editorial appointments, leadership roles, teaching assignments and
visiting professorships.

Return a single JSON object and nothing else:
{
  "entries": [
    {"title": "...",
     "description": null,
     "date": null,
     "start_date": null,
     "end_date": null,
     "location": null,
     "url": null,
     "suggested_category": "Publications|Presentations|Awards|Grants|Leadership|Teaching|Service",
     "confidence": 0.0,
     "reasoning": "..."}
  ]
}

Use "date" for one-time events and "start_date"/"end_date" for positions.
confidence is between 0 and 1. Return {"entries": []} when nothing qualifies."""

EMAIL_USER_TEMPLATE = """FROM: {sender}
SUBJECT: {subject}
DATE: {received_at}

BODY:
{body}"""
