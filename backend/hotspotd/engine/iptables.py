from typing import List

from hotspotd.cmd import CmdResult, CommandRunner
from hotspotd.errors import CommandFailed


def nat_rules(ap_if: str, uplink_if: str) -> List[List[str]]:
    """
    Masquerade on the uplink, forward AP->uplink, and let only
    established/related traffic back in from the uplink.
    Each rule is kept without its -A/-C/-D verb.
    """
    return [
        ["-t", "nat", "POSTROUTING", "-o", uplink_if, "-j", "MASQUERADE"],
        ["FORWARD", "-i", ap_if, "-o", uplink_if, "-j", "ACCEPT"],
        [
            "FORWARD",
            "-i",
            uplink_if,
            "-o",
            ap_if,
            "-m",
            "state",
            "--state",
            "RELATED,ESTABLISHED",
            "-j",
            "ACCEPT",
        ],
    ]


def _with_verb(rule: List[str], verb: str) -> List[str]:
    # "-t nat" must stay in front of the verb's chain argument
    if rule[:1] == ["-t"]:
        return rule[:2] + [verb] + rule[2:]
    return [verb] + rule


def rule_text(rule: List[str]) -> str:
    return " ".join(rule)


class Iptables:
    def __init__(self, runner: CommandRunner, iptables: str = "iptables"):
        self.runner = runner
        self.iptables = iptables

    def exists(self, rule: List[str]) -> bool:
        res = self.runner.run([self.iptables] + _with_verb(rule, "-C"), privileged=True)
        return res.ok

    def add_unique(self, rule: List[str]) -> bool:
        """
        Append the rule unless an identical one is present.
        Returns True only when this call added it.
        """
        if self.exists(rule):
            return False
        self.runner.check(
            [self.iptables] + _with_verb(rule, "-A"),
            step="install_firewall_rule",
            resource=rule_text(rule),
            error_cls=CommandFailed,
        )
        return True

    def delete(self, rule: List[str]) -> CmdResult:
        return self.runner.run([self.iptables] + _with_verb(rule, "-D"), privileged=True)
