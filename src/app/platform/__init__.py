"""Platform module -- persistence, schemas and services behind the agent platform API.

Provides SQLAlchemy models for every entity (users, agents, integrations,
Kommo tokens, triggers, chains, knowledge base, CRM mirror, notifications),
Pydantic records and the CRM snapshot document, the PlatformRepository
data-access layer, domain exceptions and the NotificationService.
"""
