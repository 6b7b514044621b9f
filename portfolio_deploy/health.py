"""Health checks for the deployed service.

``HealthChecker`` runs inside the health server and composes the sub-checks
into a ``HealthReport``. ``HealthProbe`` is the deployer's side: it polls an
HTTP endpoint with bounded retries and tracks the probe state machine
(unknown -> checking -> healthy | unhealthy).
"""
import asyncio
import time
from datetime import datetime, timezone

import aiohttp
import psutil

from .errors import HealthCheckTimeout
from .logger import get_logger, success
from .models import CheckResult, Health, HealthReport, ProbeState

logger = get_logger("health")


def _is_success(status):
    return 200 <= status < 400


class HealthChecker:
    """Runs the main-app, filesystem and system-resource sub-checks"""

    def __init__(self, settings):
        self.settings = settings
        self.start_time = time.monotonic()

    @property
    def uptime(self):
        return int(time.monotonic() - self.start_time)

    async def check_main_app(self):
        started = time.monotonic()
        timeout = aiohttp.ClientTimeout(total=self.settings.health_timeout_s)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(self.settings.main_app_url) as response:
                    elapsed_ms = int((time.monotonic() - started) * 1000)
                    return CheckResult(
                        name="main_app",
                        status=Health.HEALTHY if _is_success(response.status) else Health.UNHEALTHY,
                        details={"statusCode": response.status, "responseTime": elapsed_ms},
                    )
        except asyncio.TimeoutError:
            return CheckResult(
                name="main_app",
                status=Health.UNHEALTHY,
                details={"responseTime": int(self.settings.health_timeout_s * 1000)},
                error="Request timeout",
            )
        except (aiohttp.ClientError, OSError) as e:
            return CheckResult(
                name="main_app",
                status=Health.UNHEALTHY,
                details={"responseTime": int((time.monotonic() - started) * 1000)},
                error=str(e) or type(e).__name__,
            )

    async def check_filesystem(self):
        s = self.settings
        try:
            dist_exists = s.artifact_path.is_dir()
            index_exists = s.entry_path.is_file()
            disk_path = s.deploy_path if s.deploy_path.exists() else "/"
            disk_percent = psutil.disk_usage(str(disk_path)).percent
        except OSError as e:
            return CheckResult(name="filesystem", status=Health.UNHEALTHY, error=str(e))

        healthy = dist_exists and index_exists and disk_percent < s.disk_threshold
        return CheckResult(
            name="filesystem",
            status=Health.HEALTHY if healthy else Health.UNHEALTHY,
            details={
                "distExists": dist_exists,
                "indexExists": index_exists,
                "diskUsagePercent": round(disk_percent, 2),
            },
        )

    async def check_system_resources(self):
        s = self.settings
        try:
            memory = psutil.virtual_memory()
            cpu_percent = psutil.cpu_percent(interval=None)
            load_average = list(psutil.getloadavg())
            process_rss = psutil.Process().memory_info().rss
            boot_time = psutil.boot_time()
        except (OSError, psutil.Error) as e:
            return CheckResult(name="system_resources", status=Health.UNHEALTHY, error=str(e))

        healthy = memory.percent < s.memory_threshold and cpu_percent < s.cpu_threshold
        return CheckResult(
            name="system_resources",
            status=Health.HEALTHY if healthy else Health.UNHEALTHY,
            details={
                "memory": {
                    "processRss": process_rss,
                    "systemUsagePercent": round(memory.percent, 2),
                    "systemTotal": memory.total,
                    "systemAvailable": memory.available,
                },
                "cpu": {"usagePercent": round(cpu_percent, 2), "loadAverage": load_average},
                "uptime": {"process": self.uptime, "system": int(time.time() - boot_time)},
            },
        )

    async def check_readiness(self):
        return await self.check_main_app()

    async def run_checks(self):
        checks = await asyncio.gather(
            self.check_main_app(),
            self.check_filesystem(),
            self.check_system_resources(),
        )
        report = HealthReport(
            timestamp=datetime.now(timezone.utc),
            uptime=self.uptime,
            version=self.settings.app_version,
            checks={check.name: check for check in checks},
        )
        logger.info(f"Health check completed: {report.status.value}")
        return report


class HealthProbe:
    """Polls an HTTP health endpoint with a per-attempt timeout and fixed backoff"""

    def __init__(self, url, timeout=5.0, attempts=10, backoff=2.0):
        self.url = url
        self.timeout = timeout
        self.attempts = attempts
        self.backoff = backoff
        self.state = ProbeState.UNKNOWN
        self.transitions = [ProbeState.UNKNOWN]
        self.logger = get_logger("probe")

    @classmethod
    def from_settings(cls, settings):
        return cls(
            settings.health_check_url,
            timeout=settings.health_timeout_s,
            attempts=settings.health_check_attempts,
            backoff=settings.health_check_backoff_s,
        )

    def _transition(self, state):
        self.state = state
        self.transitions.append(state)

    async def _fetch_status(self, url):
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(url) as response:
                return response.status

    async def check(self, url=None):
        """One bounded attempt; True on a 2xx/3xx response"""
        url = url or self.url
        self._transition(ProbeState.CHECKING)
        try:
            status = await self._fetch_status(url)
        except asyncio.TimeoutError:
            self.logger.debug(f"{url} timed out after {self.timeout}s")
            status = None
        except (aiohttp.ClientError, OSError) as e:
            self.logger.debug(f"{url} unreachable: {e}")
            status = None

        healthy = status is not None and _is_success(status)
        self._transition(ProbeState.HEALTHY if healthy else ProbeState.UNHEALTHY)
        return healthy

    async def wait_until_healthy(self, attempts=None, backoff=None, url=None):
        attempts = attempts or self.attempts
        backoff = self.backoff if backoff is None else backoff
        url = url or self.url
        self.logger.info(f"Performing health check at {url}")

        for attempt in range(1, attempts + 1):
            if await self.check(url):
                success(self.logger, f"Health check passed on attempt {attempt}")
                return attempt
            self.logger.warning(f"Health check failed (attempt {attempt}/{attempts})")
            if attempt < attempts:
                await asyncio.sleep(backoff)

        raise HealthCheckTimeout(f"Health check failed after {attempts} attempts")
