"""Constants for RankWarden"""

from pathlib import Path

# Version info
APP_VERSION = "1.4.0"

BOT_DESCRIPTION = "Roster rank, badge and uprank management"

LOGGER_NAME = 'RankWarden'

# Rank ladder, lowest first. Level = position + 1.
RANK_LADDER = [
    ('Recruit', 'Green'),
    ('Officer I', 'Green'),
    ('Officer II', 'Green'),
    ('Officer III', 'Green'),
    ('Senior Officer', 'Green'),
    ('Corporal', 'Silver'),
    ('Sergeant I', 'Silver'),
    ('Sergeant II', 'Silver'),
    ('Lieutenant I', 'Silver'),
    ('Lieutenant II', 'Gold'),
    ('Captain', 'Gold'),
    ('Commander', 'Gold'),
    ('Deputy Chief', 'Red'),
    ('Assistant Chief', 'Red'),
    ('Chief of Police', 'Red'),
]

# Badge pools and cooldowns per team
TEAM_SETTINGS = {
    'Green': {'badge_prefix': 'G', 'badge_range_min': 1, 'badge_range_max': 39, 'lock_weeks': 1},
    'Silver': {'badge_prefix': 'S', 'badge_range_min': 40, 'badge_range_max': 59, 'lock_weeks': 2},
    'Gold': {'badge_prefix': 'GD', 'badge_range_min': 60, 'badge_range_max': 74, 'lock_weeks': 4},
    'Red': {'badge_prefix': 'R', 'badge_range_min': 75, 'badge_range_max': 89, 'lock_weeks': 0},
}

CATALOG_VERSION = "2024.1"

DEFAULT_CATALOG = {
    'version': CATALOG_VERSION,
    'ranks': [
        {'level': index + 1, 'name': name, 'team': team}
        for index, (name, team) in enumerate(RANK_LADDER)
    ],
    'teams': [
        {'team': team, **settings}
        for team, settings in TEAM_SETTINGS.items()
    ],
}

# Rank engine settings
RANK_SETTINGS = {
    'BADGE_CONFLICT_RETRIES': 1,     # Fresh badge scans after a uniqueness conflict
    'MIN_BADGE_WIDTH': 2,            # Badge numbers are at least two digits
    'HISTORY_LIMIT': 10,             # Rows shown by /rank-history
    'RANK_FEED_SIZE': 100,           # Recent rank changes kept in Redis
    'MANUAL_LOCK_TEAM': 'Manual',    # Team label for hand-made locks
}

REQUEST_STATUSES = ['PENDING', 'APPROVED', 'REJECTED']

# Capability -> Discord role names allowed to use it
CAPABILITY_ROLES = {
    'rank.view': ['Sergeant I', 'Sergeant II', 'Lieutenant I', 'Lieutenant II',
                  'Captain', 'Commander', 'Deputy Chief', 'Assistant Chief',
                  'Chief of Police', 'Admin'],
    'rank.request': ['Sergeant II', 'Lieutenant I', 'Lieutenant II', 'Captain',
                     'Commander', 'Deputy Chief', 'Assistant Chief',
                     'Chief of Police', 'Admin'],
    'rank.change': ['Captain', 'Commander', 'Deputy Chief', 'Assistant Chief',
                    'Chief of Police', 'Admin'],
    'rank.approve': ['Deputy Chief', 'Assistant Chief', 'Chief of Police', 'Admin'],
    'admin.full': ['Chief of Police', 'Admin'],
}

# Message Templates
SYSTEM_MESSAGES = {
    'NICKNAME': "[{badge}] {name}",
    'LOCK_REASON': "Promotion to {rank} (Team {team} - {weeks} week{plural} cooldown)",
    'PROMOTION_ANNOUNCEMENT': """
🎉 **Promotion Announcement** 🎉

Please congratulate **{employee}** on their promotion to **{new_rank}**!

📋 **Details**
• Previous Rank: {old_rank}
• New Rank: {new_rank}
• Badge: {badge}
• Promoted by: {promoted_by}
• Reason: {reason}
""",
    'DEMOTION_ANNOUNCEMENT': """
📢 **Personnel Notice** 📢

**{employee}** has been reassigned to **{new_rank}**.

📋 **Details**
• Previous Rank: {old_rank}
• New Rank: {new_rank}
• Badge: {badge}
• Reason: {reason}
""",
    'ACADEMY_ANNOUNCEMENT': """
🎓 **Academy Graduation** 🎓

**{employee}** has completed their training and now serves as **{new_rank}**.

• Badge: {badge}
• Trained by: {trained_by}
• Notes: {notes}
""",
}

# Cache Settings
CACHE_SETTINGS = {
    'STATUS_TTL': 300,            # 5 minutes
    'REDIS_TIMEOUT': 5,           # Redis operation timeout in seconds
    'REDIS_RETRY_COUNT': 3,       # Number of retries for Redis operations
    'REDIS_RETRY_DELAY': 1,       # Delay between retries in seconds
    'NOTIFICATION_LIST_SIZE': 50  # Notifications kept per employee
}

# Database Settings
DB_SETTINGS = {
    'POOL_SIZE': 20,
    'MAX_OVERFLOW': 10,
    'POOL_TIMEOUT': 30,
    'POOL_RECYCLE': 1800,
    'ECHO': False,
}

# Bot Configuration
BOT_REQUIRED_PERMISSIONS = [
    'view_channel',
    'manage_roles',
    'manage_nicknames',
    'send_messages',
    'read_message_history',
]

# Path Configuration
BASE_DIR = Path(__file__).resolve().parent.parent.parent
LOG_DIR = BASE_DIR / "logs"
