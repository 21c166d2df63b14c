#!/usr/bin/env python3

from abc import ABCMeta, abstractmethod
from typing import Any, Optional


class NotFoundError(RuntimeError):
    pass


class RequestError(RuntimeError):
    """
    The endpoint answered a REST request with an error status that is
    not worth retrying (validation failure, merge conflict, ...).
    """

    status: int

    # Parsed JSON body of the error response, if there was one
    payload: Optional[Any]

    def __init__(self, msg: str, status: int, payload: Optional[Any] = None) -> None:
        super().__init__(msg)
        self.status = status
        self.payload = payload


class GitHubEndpoint(metaclass=ABCMeta):
    @abstractmethod
    def graphql(self, query: str, **kwargs: Any) -> Any:
        """
        Args:
            query: string GraphQL query to execute
            **kwargs: values for variables in the graphql query

        Returns: parsed JSON response
        """
        pass

    def get(self, path: str, **kwargs: Any) -> Any:
        """
        Send a GET request to endpoint 'path'.

        Returns: parsed JSON response
        """
        return self.rest("get", path, **kwargs)

    def post(self, path: str, **kwargs: Any) -> Any:
        """
        Send a POST request to endpoint 'path'.

        Returns: parsed JSON response
        """
        return self.rest("post", path, **kwargs)

    def patch(self, path: str, **kwargs: Any) -> Any:
        """
        Send a PATCH request to endpoint 'path'.

        Returns: parsed JSON response
        """
        return self.rest("patch", path, **kwargs)

    def put(self, path: str, **kwargs: Any) -> Any:
        """
        Send a PUT request to endpoint 'path'.

        Returns: parsed JSON response
        """
        return self.rest("put", path, **kwargs)

    @abstractmethod
    def rest(self, method: str, path: str, **kwargs: Any) -> Any:
        """
        Send a 'method' request to endpoint 'path'.

        Args:
            method: 'GET', 'POST', etc.
            path: relative URL path to access on endpoint
            **kwargs: dictionary of JSON payload to send

        Returns: parsed JSON response

        Raises:
            NotFoundError: on 404
            RequestError: on any other non-transient error status
            stacksync.errors.TransientRemoteError: on rate limiting,
                server errors and connection failures
        """
        pass
