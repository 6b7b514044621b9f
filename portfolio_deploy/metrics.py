CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


def _gauge(lines, name, help_text, kind, labels, value):
    label_text = ",".join(f'{k}="{v}"' for k, v in labels.items())
    lines.append(f"# HELP {name} {help_text}")
    lines.append(f"# TYPE {name} {kind}")
    lines.append(f"{name}{{{label_text}}} {value}")
    lines.append("")


def render_metrics(report, service="portfolio"):
    """Render a HealthReport in the text exposition format"""
    lines = []
    _gauge(lines, "portfolio_health_status", "Overall health status (1 = healthy, 0 = unhealthy)",
           "gauge", {"service": service}, 1 if report.healthy else 0)
    _gauge(lines, "portfolio_uptime_seconds", "Service uptime in seconds",
           "counter", {"service": service}, report.uptime)
    for name, check in report.checks.items():
        _gauge(lines, f"portfolio_check_{name}_status", "Health check status (1 = healthy, 0 = unhealthy)",
               "gauge", {"service": service, "check": name}, 1 if check.healthy else 0)
    return "\n".join(lines)
