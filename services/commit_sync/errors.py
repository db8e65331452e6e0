"""Errors raised by the sync domain (host errors live in ``services.github_gateway``)."""


class RepositoryNotFound(Exception):
    """No local repository record has the requested id."""

    def __init__(self, repository_id: int):
        super().__init__(f"Repository with ID {repository_id} not found")
        self.repository_id = repository_id


class IncompleteIdentityError(Exception):
    """A commit carries neither a host account id nor an email."""


class MalformedCommitError(Exception):
    """A commit entry cannot be stored (e.g. it has no date)."""
