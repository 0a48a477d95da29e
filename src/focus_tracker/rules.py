"""Static classification rules: distraction lists, default app categories and label tables."""

from __future__ import annotations

from typing import Optional

from .models import ActivityType, Session


class DistractionRules:
    """Single source of truth for distraction, work and communication surfaces."""

    distraction_domains: frozenset[str] = frozenset(
        {
            # Video
            "youtube.com",
            "netflix.com",
            "hulu.com",
            "disneyplus.com",
            "primevideo.com",
            "twitch.tv",
            "vimeo.com",
            "dailymotion.com",
            # Social
            "twitter.com",
            "x.com",
            "facebook.com",
            "instagram.com",
            "tiktok.com",
            "snapchat.com",
            "linkedin.com/feed",
            # Rabbit holes
            "reddit.com",
            "9gag.com",
            "buzzfeed.com",
            "imgur.com",
            "tumblr.com",
            "pinterest.com",
            # Gaming
            "discord.com",
            "steampowered.com",
            # Shopping
            "amazon.com",
            "ebay.com",
            "etsy.com",
        }
    )

    distraction_apps: frozenset[str] = frozenset(
        {
            "com.apple.TV",
            "com.spotify.client",
            "com.apple.Music",
            "com.netflix.Netflix",
            "com.google.ios.youtube",
            "tv.twitch.Twitch",
        }
    )

    work_domains: frozenset[str] = frozenset(
        {
            "github.com",
            "gitlab.com",
            "bitbucket.org",
            "stackoverflow.com",
            "developer.apple.com",
            "docs.google.com",
            "sheets.google.com",
            "slides.google.com",
            "notion.so",
            "figma.com",
            "linear.app",
            "vercel.com",
            "netlify.com",
            "aws.amazon.com",
            "console.cloud.google.com",
        }
    )

    communication_domains: frozenset[str] = frozenset(
        {
            "slack.com",
            "teams.microsoft.com",
            "mail.google.com",
            "outlook.com",
            "outlook.office.com",
            "zoom.us",
            "meet.google.com",
            "calendar.google.com",
            "outlook.office365.com/calendar",
        }
    )

    @classmethod
    def is_distraction_domain(cls, domain: Optional[str]) -> bool:
        if not domain:
            return False
        return any(pattern in domain for pattern in cls.distraction_domains)

    @classmethod
    def is_distraction_app(cls, app_identifier: Optional[str]) -> bool:
        return bool(app_identifier) and app_identifier in cls.distraction_apps

    @classmethod
    def is_distraction_session(cls, session: Session) -> bool:
        """Entertainment, a listed app, or a listed browser domain."""
        if session.activity_type is ActivityType.ENTERTAINMENT:
            return True
        if cls.is_distraction_app(session.app_identifier):
            return True
        return cls.is_distraction_domain(session.primary_domain)

    @classmethod
    def is_work_domain(cls, domain: Optional[str]) -> bool:
        if not domain:
            return False
        return any(pattern in domain for pattern in cls.work_domains)

    @classmethod
    def is_communication_domain(cls, domain: Optional[str]) -> bool:
        if not domain:
            return False
        return any(pattern in domain for pattern in cls.communication_domains)


TRACKER_APP_IDENTIFIER = "com.focustracker.app"

# (app identifier, activity type, ambiguous)
DEFAULT_APP_RULES: tuple[tuple[str, ActivityType, bool], ...] = (
    ("com.apple.dt.Xcode", ActivityType.FOCUSED_WORK, False),
    ("com.microsoft.VSCode", ActivityType.FOCUSED_WORK, False),
    ("com.googlecode.iterm2", ActivityType.FOCUSED_WORK, False),
    ("com.apple.Terminal", ActivityType.FOCUSED_WORK, False),
    ("com.sublimetext.4", ActivityType.FOCUSED_WORK, False),
    ("com.jetbrains.intellij", ActivityType.FOCUSED_WORK, False),
    ("com.jetbrains.pycharm", ActivityType.FOCUSED_WORK, False),
    ("com.jetbrains.webstorm", ActivityType.FOCUSED_WORK, False),
    ("com.panic.Nova", ActivityType.FOCUSED_WORK, False),
    ("com.github.GitHubClient", ActivityType.FOCUSED_WORK, False),
    ("com.apple.iWork.Pages", ActivityType.FOCUSED_WORK, False),
    ("com.apple.iWork.Keynote", ActivityType.FOCUSED_WORK, False),
    ("com.apple.iWork.Numbers", ActivityType.FOCUSED_WORK, False),
    ("com.microsoft.Word", ActivityType.FOCUSED_WORK, False),
    ("com.microsoft.Excel", ActivityType.FOCUSED_WORK, False),
    ("com.microsoft.Powerpoint", ActivityType.FOCUSED_WORK, False),
    ("com.figma.Desktop", ActivityType.FOCUSED_WORK, False),
    ("com.adobe.Photoshop", ActivityType.FOCUSED_WORK, False),
    ("com.adobe.illustrator", ActivityType.FOCUSED_WORK, False),
    ("com.adobe.LightroomClassicCC7", ActivityType.FOCUSED_WORK, False),
    ("com.maxon.cinema4d", ActivityType.FOCUSED_WORK, False),
    ("com.blender.blender", ActivityType.FOCUSED_WORK, False),
    ("notion.id", ActivityType.FOCUSED_WORK, False),
    ("com.apple.Notes", ActivityType.FOCUSED_WORK, True),
    ("com.apple.Safari", ActivityType.BROWSER, True),
    ("com.google.Chrome", ActivityType.BROWSER, True),
    ("org.mozilla.firefox", ActivityType.BROWSER, True),
    ("com.brave.Browser", ActivityType.BROWSER, True),
    ("company.thebrowser.Browser", ActivityType.BROWSER, True),
    ("com.opera.Opera", ActivityType.BROWSER, True),
    ("com.microsoft.edgemac", ActivityType.BROWSER, True),
    ("com.tinyspeck.slackmacgap", ActivityType.COMMUNICATION, True),
    ("com.hnc.Discord", ActivityType.COMMUNICATION, True),
    ("com.apple.MobileSMS", ActivityType.COMMUNICATION, True),
    ("com.apple.mail", ActivityType.COMMUNICATION, False),
    ("us.zoom.xos", ActivityType.COMMUNICATION, False),
    ("com.microsoft.teams", ActivityType.COMMUNICATION, False),
    ("com.telegram.desktop", ActivityType.COMMUNICATION, True),
    ("ru.keepcoder.Telegram", ActivityType.COMMUNICATION, True),
    ("com.whatsapp.desktop", ActivityType.COMMUNICATION, True),
    ("com.apple.iCal", ActivityType.COMMUNICATION, False),
    ("com.flexibits.fantastical2.mac", ActivityType.COMMUNICATION, False),
    ("readdle.spark.mac", ActivityType.COMMUNICATION, False),
    ("com.spotify.client", ActivityType.ENTERTAINMENT, False),
    ("com.apple.Music", ActivityType.ENTERTAINMENT, False),
    ("com.apple.TV", ActivityType.ENTERTAINMENT, False),
    ("com.valve.steam", ActivityType.ENTERTAINMENT, False),
    ("com.apple.podcasts", ActivityType.ENTERTAINMENT, False),
    ("com.apple.finder", ActivityType.ADMIN, False),
    ("com.apple.systempreferences", ActivityType.ADMIN, False),
    ("com.apple.ActivityMonitor", ActivityType.ADMIN, False),
    ("com.apple.AppStore", ActivityType.ADMIN, False),
    ("com.apple.reminders", ActivityType.ADMIN, False),
    ("com.1password.1password", ActivityType.ADMIN, False),
    ("com.raycast.macos", ActivityType.ADMIN, False),
    ("com.runningwithcrayons.Alfred", ActivityType.ADMIN, False),
    (TRACKER_APP_IDENTIFIER, ActivityType.META, False),
)

# Substring match against a session's primary domain; first hit wins.
DEFAULT_DOMAIN_LABELS: tuple[tuple[str, str], ...] = (
    ("github.com", "Coding"),
    ("gitlab.com", "Coding"),
    ("stackoverflow.com", "Research"),
    ("developer.apple.com", "Research"),
    ("docs.google.com", "Documents"),
    ("sheets.google.com", "Spreadsheets"),
    ("slides.google.com", "Presentation"),
    ("figma.com", "Design"),
    ("canva.com", "Design"),
    ("dribbble.com", "Design Inspiration"),
    ("behance.net", "Design Inspiration"),
    ("notion.so", "Notes"),
    ("asana.com", "Project Management"),
    ("linear.app", "Project Management"),
    ("trello.com", "Project Management"),
    ("slack.com", "Communication"),
    ("discord.com", "Communication"),
    ("mail.google.com", "Email"),
    ("outlook.office.com", "Email"),
    ("outlook.live.com", "Email"),
    ("calendar.google.com", "Scheduling"),
    ("zoom.us", "Meetings"),
    ("meet.google.com", "Meetings"),
    ("teams.microsoft.com", "Meetings"),
    ("chatgpt.com", "AI Assistance"),
    ("claude.ai", "AI Assistance"),
    ("openai.com", "AI Research"),
)

# Exact app identifier match.
DEFAULT_APP_LABELS: dict[str, str] = {
    "com.apple.dt.Xcode": "iOS Development",
    "com.microsoft.VSCode": "Coding",
    "com.apple.Terminal": "Terminal",
    "com.googlecode.iterm2": "Terminal",
    "com.apple.mail": "Email",
    "com.apple.iCal": "Scheduling",
    "com.figma.Desktop": "Design",
    "com.adobe.Photoshop": "Design",
    "com.adobe.illustrator": "Design",
    "com.tinyspeck.slackmacgap": "Communication",
    "com.hnc.Discord": "Communication",
    "us.zoom.xos": "Meeting",
    "com.microsoft.teams": "Meeting",
    "readdle.spark.mac": "Email",
}
