"""
Package Validator Service

Confirms that an npm or PyPI package exists before it is written into a
Claude Desktop configuration, so a typo never produces a server entry that
fails on launch.
"""

import logging
from typing import Any, Callable, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

NPM_REGISTRY_URL = "https://registry.npmjs.org"
PYPI_REGISTRY_URL = "https://pypi.org/pypi"


def _result(valid: bool, error: Optional[str] = None, version: Optional[str] = None) -> Dict[str, Any]:
    return {"valid": valid, "error": error, "version": version}


class PackageValidator:
    """Looks packages up in the npm and PyPI registries."""

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout

    async def _lookup(
        self,
        registry: str,
        package: str,
        url: str,
        latest_version: Callable[[Dict[str, Any]], Optional[str]],
    ) -> Dict[str, Any]:
        if not package or not package.strip():
            logger.warning("Package name cannot be empty")
            return _result(False, "Package name cannot be empty")

        logger.info(f"Validating {registry} package: {package}")
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url)
        except httpx.TimeoutException:
            logger.error(f"Timeout while validating {registry} package '{package}' (exceeded {self.timeout}s)")
            return _result(False, "Package validation timed out. Please try again.")
        except httpx.RequestError as e:
            logger.error(f"Network error while validating {registry} package '{package}': {e}")
            return _result(False, f"Failed to connect to {registry} registry. Check your internet connection.")

        if response.status_code == 404:
            error = f"Package '{package}' not found in {registry} registry"
            logger.warning(error)
            return _result(False, error)

        if response.status_code != 200:
            error = f"{registry} registry error: HTTP {response.status_code}"
            logger.error(f"{error} for package '{package}'")
            return _result(False, error)

        try:
            version = latest_version(response.json())
        except ValueError as e:
            logger.error(f"Malformed {registry} registry response for '{package}': {e}")
            return _result(False, f"Failed to validate package: {e}")

        logger.info(f"{registry} package '{package}' found, version: {version}")
        return _result(True, version=version)

    async def validate_npm_package(self, package: str) -> Dict[str, Any]:
        """
        Check that an npm package exists.

        Scoped names are URL-encoded (``@user/pkg`` becomes ``@user%2Fpkg``).

        Returns:
            {"valid": bool, "error": str | None, "version": str | None}
        """
        encoded = (package or "").replace("/", "%2F")
        return await self._lookup(
            "npm",
            package,
            f"{NPM_REGISTRY_URL}/{encoded}",
            lambda data: (data.get("dist-tags") or {}).get("latest"),
        )

    async def validate_python_package(self, package: str) -> Dict[str, Any]:
        """
        Check that a package exists on PyPI.

        Returns:
            {"valid": bool, "error": str | None, "version": str | None}
        """
        return await self._lookup(
            "PyPI",
            package,
            f"{PYPI_REGISTRY_URL}/{package}/json",
            lambda data: (data.get("info") or {}).get("version"),
        )
