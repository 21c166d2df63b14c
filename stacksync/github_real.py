#!/usr/bin/env python3

import json
import logging
import time
from typing import Any, Dict, Optional, Tuple, Union

import requests

import stacksync
import stacksync.github
from stacksync.errors import TransientRemoteError


class RealGitHubEndpoint(stacksync.github.GitHubEndpoint):
    """
    GitHub over HTTPS: GraphQL queries and REST calls, authenticated
    with an OAuth token.

    Nothing is retried here; rate limiting, server errors and
    connection failures are raised as TransientRemoteError and the
    caller decides whether to try again.
    """

    # The URL of the GraphQL endpoint to connect to
    @property
    def graphql_endpoint(self) -> str:
        if self.github_url == "github.com":
            return f"https://api.{self.github_url}/graphql"
        else:
            return f"https://{self.github_url}/api/graphql"

    # The base URL of the REST endpoint to connect to (all REST requests
    # will be subpaths of this URL)
    @property
    def rest_endpoint(self) -> str:
        if self.github_url == "github.com":
            return f"https://api.{self.github_url}"
        else:
            return f"https://{self.github_url}/api/v3"

    # The string OAuth token to authenticate to the GraphQL server with.
    # May be None if we're doing public access only.
    oauth_token: Optional[str]

    # The URL of a proxy to use for these connections
    proxy: Optional[str]

    # The certificate bundle to be used to verify the connection.
    # Passed to requests as 'verify'.
    verify: Optional[str]

    # Client side certificate to use when connecting.
    # Passed to requests as 'cert'.
    cert: Optional[Union[str, Tuple[str, str]]]

    # Seconds before a request is abandoned
    timeout: float

    def __init__(
        self,
        oauth_token: Optional[str],
        github_url: str,
        proxy: Optional[str] = None,
        verify: Optional[str] = None,
        cert: Optional[Union[str, Tuple[str, str]]] = None,
        timeout: float = 60.0,
    ):
        self.oauth_token = oauth_token
        self.proxy = proxy
        self.github_url = github_url
        self.verify = verify
        self.cert = cert
        self.timeout = timeout

    def _proxies(self) -> Dict[str, str]:
        if self.proxy:
            return {"http": self.proxy, "https": self.proxy}
        else:
            return {}

    def _send(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        try:
            return requests.request(
                method,
                url,
                proxies=self._proxies(),
                verify=self.verify,
                cert=self.cert,
                timeout=self.timeout,
                **kwargs,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientRemoteError(
                "Could not reach {}: {}".format(self.github_url, e)
            ) from e

    def _check_transient(self, resp: requests.Response, pretty: str) -> None:
        # Per GitHub rate limiting: primary limits answer 403/429 with
        # x-ratelimit-remaining: 0, secondary ones with retry-after
        if resp.status_code in (403, 429):
            remaining_count = resp.headers.get("x-ratelimit-remaining")
            reset_time = resp.headers.get("x-ratelimit-reset")
            retry_after = resp.headers.get("retry-after")
            if remaining_count == "0" and reset_time:
                raise TransientRemoteError(
                    "GitHub rate limit exceeded",
                    retry_after=float(int(reset_time) - int(time.time())),
                )
            if retry_after or resp.status_code == 429:
                raise TransientRemoteError(
                    "GitHub secondary rate limit hit",
                    retry_after=float(retry_after) if retry_after else None,
                )
        if resp.status_code >= 500:
            raise TransientRemoteError(
                "GitHub answered {}:\n{}".format(resp.status_code, pretty)
            )

    def graphql(self, query: str, **kwargs: Any) -> Any:
        headers = {}
        if self.oauth_token:
            headers["Authorization"] = "bearer {}".format(self.oauth_token)

        logging.debug("# POST {}".format(self.graphql_endpoint))
        logging.debug("Request GraphQL query:\n{}".format(query))
        logging.debug(
            "Request GraphQL variables:\n{}".format(json.dumps(kwargs, indent=1))
        )

        resp = self._send(
            "post",
            self.graphql_endpoint,
            json={"query": query, "variables": kwargs},
            headers=headers,
        )

        logging.debug("Response status: {}".format(resp.status_code))

        try:
            r = resp.json()
        except ValueError:
            logging.debug("Response body:\n{}".format(resp.text))
            self._check_transient(resp, resp.text)
            raise
        else:
            pretty_json = json.dumps(r, indent=1)
            logging.debug("Response JSON:\n{}".format(pretty_json))

        self._check_transient(resp, pretty_json)

        # GitHub mostly answers 200 even when the query failed, so the
        # errors key is what really matters
        try:
            resp.raise_for_status()
        except requests.HTTPError:
            raise RuntimeError(pretty_json)

        if "errors" in r:
            raise RuntimeError(pretty_json)

        return r

    def rest(self, method: str, path: str, **kwargs: Any) -> Any:
        assert self.oauth_token
        headers = {
            "Authorization": "token " + self.oauth_token,
            "Content-Type": "application/json",
            "User-Agent": "stacksync/{}".format(stacksync.__version__),
            "Accept": "application/vnd.github.v3+json",
        }

        url = self.rest_endpoint + "/" + path

        logging.debug("# {} {}".format(method, url))
        logging.debug("Request body:\n{}".format(json.dumps(kwargs, indent=1)))

        resp = self._send(method, url, json=kwargs, headers=headers)

        logging.debug("Response status: {}".format(resp.status_code))

        r: Any = None
        pretty_json = ""
        if resp.content:
            try:
                r = resp.json()
            except ValueError:
                logging.debug("Response body:\n{}".format(resp.text))
                self._check_transient(resp, resp.text)
                raise
            pretty_json = json.dumps(r, indent=1)
            logging.debug("Response JSON:\n{}".format(pretty_json))

        self._check_transient(resp, pretty_json)

        if resp.status_code == 404:
            raise stacksync.github.NotFoundError(
                """\
GitHub answered 404 for {url}.
For a repository you can see, this almost always means the OAuth token
lacks the "repo" scope.  Create a token with that scope at
https://{github_url}/settings/tokens and put it in ~/.stacksyncrc.
""".format(
                    url=url, github_url=self.github_url
                )
            )

        if resp.status_code >= 400:
            message = r.get("message") if isinstance(r, dict) else None
            raise stacksync.github.RequestError(
                "{} {} failed with {}: {}".format(
                    method.upper(), path, resp.status_code, message or pretty_json
                ),
                resp.status_code,
                r,
            )

        return r
