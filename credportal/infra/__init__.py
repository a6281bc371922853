from credportal.infra.repositories import (
    CredentialingRepository,
    InMemoryRepository,
    SupabaseRepository,
    build_repository,
)

__all__ = [
    "CredentialingRepository",
    "InMemoryRepository",
    "SupabaseRepository",
    "build_repository",
]
