"""Terminal color codes for log differentiation.

Usage:
    from jengahacks.shared.log_colors import LogColors

    logger.warning(f"{LogColors.ABUSE_LABEL} rate_limited: email=abc***@x.com")
    logger.error(f"{LogColors.STORE_LABEL} block check failed: ...")
"""


class LogColors:
    """ANSI terminal colors for differentiating log sources."""

    RESET = "\033[0m"

    # Client-caused rejections (yellow - external, expected)
    ABUSE = "\033[93m"
    ABUSE_LABEL = f"{ABUSE}[ABUSE]{RESET}"

    # Backing store problems (red - internal, needs attention)
    STORE = "\033[91m"
    STORE_LABEL = f"{STORE}[STORE]{RESET}"

    # Upstream services such as reCAPTCHA (cyan)
    NETWORK = "\033[96m"
    NETWORK_LABEL = f"{NETWORK}[NETWORK]{RESET}"

    # Successful admissions (green)
    SUCCESS = "\033[92m"
    SUCCESS_LABEL = f"{SUCCESS}[OK]{RESET}"

    # Admin and escalation actions (magenta)
    ADMIN = "\033[95m"
    ADMIN_LABEL = f"{ADMIN}[ADMIN]{RESET}"
