from colorama import Fore, Style, init

from .models import JobStatus, ScanResult, Severity

init()

STATUS_COLORS = {
    JobStatus.OK: Fore.GREEN,
    JobStatus.SKIP: Fore.YELLOW,
    JobStatus.TIMEOUT: Fore.MAGENTA,
    JobStatus.ERROR: Fore.RED,
    JobStatus.CANCELLED: Style.DIM,
}

SEVERITY_COLORS = {
    Severity.CRITICAL: Fore.RED + Style.BRIGHT,
    Severity.HIGH: Fore.RED,
    Severity.MEDIUM: Fore.YELLOW,
    Severity.LOW: Fore.CYAN,
    Severity.INFO: Fore.WHITE,
}


class ConsoleReporter:
    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    def print_summary(self, result: ScanResult):
        print(f"\n{Style.BRIGHT}=== SCAN SUMMARY ==={Style.RESET_ALL}\n")

        findings = sorted(result.findings, key=lambda f: -f.severity.rank)
        for finding in findings:
            color = SEVERITY_COLORS[finding.severity]
            print(f"[{color}{finding.severity.value.upper()}{Style.RESET_ALL}] {finding.id} "
                  f"on {finding.target} - {finding.name}")

        for outcome in result.outcomes:
            if outcome.status is JobStatus.OK and not (self.verbose and outcome.warnings):
                continue
            color = STATUS_COLORS[outcome.status]
            print(f"  {color}{outcome.status.value.upper():<9}{Style.RESET_ALL} "
                  f"{outcome.template_id} @ {outcome.target}: {outcome.reason}")
            if self.verbose:
                for warning in outcome.warnings:
                    print(f"      {Fore.YELLOW}- {warning}{Style.RESET_ALL}")

        counts = result.summary()
        parts = [f"{STATUS_COLORS[s]}{s.value}: {counts[s.value]}{Style.RESET_ALL}" for s in JobStatus]
        print(f"\n{Style.BRIGHT}Jobs:{Style.RESET_ALL} {len(result.outcomes)}  " + "  ".join(parts))
        print(f"{Style.BRIGHT}Findings:{Style.RESET_ALL} {len(findings)}")
        if result.finished_at:
            print(f"Duration: {result.finished_at - result.started_at:.1f}s")
        if result.cancelled:
            print(f"{Fore.YELLOW}Scan was cancelled; results are partial.{Style.RESET_ALL}")
