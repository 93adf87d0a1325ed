"""
Working copies: private drafts of published SOPs, reviewed and merged back.

Lifecycle: DRAFT -> SUBMITTED -> DECIDED -> MERGED | DISCARDED.
MERGED and DISCARDED copies are deleted.
"""
