"""Common CV section headings (academic and clinical CVs).

Used by the chunker to prefer cutting right before a section heading.
Matching is case-insensitive on the start of a line. PUBLICATION_CATEGORIES
names the categories PMID enrichment looks at.
"""

SECTION_HEADINGS = [
    "publications",
    "peer-reviewed publications",
    "peer reviewed publications",
    "presentations",
    "invited presentations",
    "invited lectures",
    "grants",
    "grants and funding",
    "awards",
    "awards and honors",
    "honors",
    "education",
    "experience",
    "professional experience",
    "clinical experience",
    "research experience",
    "teaching",
    "mentoring",
    "service",
    "leadership",
    "editorial boards",
    "editorial activities",
    "committee",
    "committees",
    "professional memberships",
    "memberships",
    "training",
    "postgraduate training",
    "research",
    "academic appointments",
    "appointments",
    "patents",
    "books",
    "book chapters",
    "chapters",
    "conferences",
    "certifications",
    "licensure",
]


# Categories whose entries are journal publications (candidates for PMID lookup).
# Compared case-insensitively against category names.
PUBLICATION_CATEGORIES = [
    "publications",
    "peer-reviewed publications",
    "journal articles",
    "book chapters",
    "articles",
    "original research",
]
