from .errors import DeploymentError


class FailureInjector:
    """Forces named pipeline steps to fail a given number of times"""

    def __init__(self, fail_steps=None, delay=0, error_type=DeploymentError):
        self.fail_map = {str(getattr(k, "value", k)): v for k, v in (fail_steps or {}).items()}
        self.delay = delay
        self.error_type = error_type
        self.attempts = {}

    def delay_seconds(self):
        return self.delay

    def should_fail(self, step):
        name = str(getattr(step, "value", step))
        self.attempts[name] = self.attempts.get(name, 0) + 1
        return self.attempts[name] <= self.fail_map.get(name, 0)

    def raise_if_scheduled(self, step):
        if self.should_fail(step):
            name = str(getattr(step, "value", step))
            raise self.error_type(f"Simulated failure in {name}", step=name)
