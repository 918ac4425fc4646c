"""User and job-application lookups the conversation core depends on.

Services:
    - UserDirectory: maps identity-provider subjects to internal users and
      resolves the two parties of a job application.
"""
