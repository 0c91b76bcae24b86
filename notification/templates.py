"""
Template Registry - renders notification templates into display text.

Templates are localized per language, fall back to English, and support:
    {{name}}               variable substitution (unknown variables are left as-is)
    {{#flag}}...{{/flag}}  section kept only when `flag` is truthy

Usage:
    from notification.templates import TemplateRegistry

    registry = TemplateRegistry()
    message = registry.render('like_notification', {'username': 'ana', 'contentType': 'post'}, 'es')
"""

import json
import logging
import re
import threading
from collections import OrderedDict
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field

from notification.interfaces import TemplateRenderer
from notification.models import RenderedMessage

logger = logging.getLogger(__name__)

DEFAULT_LOCALE = "en"

_VARIABLE = re.compile(r"\{\{(\w+(?:\.\w+)*)\}\}")
_SECTION = re.compile(r"\{\{#(\w+)\}\}(.*?)\{\{/\1\}\}", re.DOTALL)


class NotificationTemplate(BaseModel):
    id: str
    type: str
    title: Dict[str, str]
    body: Dict[str, str]
    data: Dict[str, Any] = Field(default_factory=dict)
    priority: str = "normal"
    sound: Optional[str] = None
    icon: Optional[str] = None
    category: Optional[str] = None


DEFAULT_TEMPLATES: List[Dict[str, Any]] = [
    {
        'id': 'like_notification',
        'type': 'like',
        'title': {
            'en': '{{username}} liked your {{contentType}}',
            'es': 'A {{username}} le gustó tu {{contentType}}',
            'fr': '{{username}} a aimé votre {{contentType}}',
        },
        'body': {
            'en': '{{username}} liked your {{contentType}}{{#othersCount}} along with {{othersCount}} others{{/othersCount}}',
            'es': 'A {{username}} le gustó tu {{contentType}}{{#othersCount}} junto con {{othersCount}} personas más{{/othersCount}}',
            'fr': '{{username}} a aimé votre {{contentType}}{{#othersCount}} avec {{othersCount}} autres{{/othersCount}}',
        },
        'data': {'contentId': '{{contentId}}', 'contentType': '{{contentType}}'},
        'priority': 'low',
        'icon': 'like_icon',
    },
    {
        'id': 'comment_notification',
        'type': 'comment',
        'title': {
            'en': '{{username}} commented on your {{contentType}}',
            'es': '{{username}} comentó tu {{contentType}}',
            'fr': '{{username}} a commenté votre {{contentType}}',
        },
        'body': {
            'en': '"{{comment}}"',
            'es': '"{{comment}}"',
            'fr': '« {{comment}} »',
        },
        'data': {'contentId': '{{contentId}}', 'commentId': '{{commentId}}'},
        'priority': 'normal',
        'icon': 'comment_icon',
    },
    {
        'id': 'follow_notification',
        'type': 'follow',
        'title': {
            'en': 'New follower',
            'es': 'Nuevo seguidor',
            'fr': 'Nouvel abonné',
        },
        'body': {
            'en': '{{username}} started following you',
            'es': '{{username}} comenzó a seguirte',
            'fr': '{{username}} a commencé à vous suivre',
        },
        'data': {'followerId': '{{followerId}}'},
        'priority': 'low',
        'icon': 'follow_icon',
    },
    {
        'id': 'mention_notification',
        'type': 'mention',
        'title': {
            'en': '{{username}} mentioned you',
            'es': '{{username}} te mencionó',
            'fr': '{{username}} vous a mentionné',
        },
        'body': {
            'en': '"{{excerpt}}"',
            'es': '"{{excerpt}}"',
            'fr': '« {{excerpt}} »',
        },
        'data': {'contentId': '{{contentId}}'},
        'priority': 'high',
        'icon': 'mention_icon',
    },
    {
        'id': 'trending_notification',
        'type': 'trending',
        'title': {
            'en': 'Trending now{{#rank}}: #{{rank}}{{/rank}}',
            'es': 'Tendencia ahora{{#rank}}: #{{rank}}{{/rank}}',
            'fr': 'Tendance{{#rank}} : #{{rank}}{{/rank}}',
        },
        'body': {
            'en': '{{title}} is trending',
            'es': '{{title}} es tendencia',
            'fr': '{{title}} est en tendance',
        },
        'data': {'contentId': '{{contentId}}'},
        'priority': 'normal',
        'icon': 'trending_icon',
    },
    {
        'id': 'system_notification',
        'type': 'system',
        'title': {'en': '{{title}}'},
        'body': {'en': '{{message}}'},
        'priority': 'high',
        'sound': 'important',
    },
    {
        'id': 'milestone_reminder',
        'type': 'milestone',
        'title': {
            'en': 'Congratulations on {{days}} days!',
            'es': '¡Felicidades por {{days}} días!',
            'fr': 'Félicitations pour {{days}} jours !',
        },
        'body': {
            'en': "You've reached an amazing milestone. Keep up the great work!",
            'es': 'Has alcanzado un hito increíble. ¡Sigue con el gran trabajo!',
            'fr': 'Vous avez atteint une étape incroyable. Continuez votre excellent travail !',
        },
        'data': {'milestoneType': 'days', 'count': '{{days}}'},
        'priority': 'high',
        'sound': 'celebration',
        'icon': 'milestone_icon',
    },
    {
        'id': 'batched_notification',
        'type': 'batch',
        'title': {
            'en': 'You have {{count}} new notifications',
            'es': 'Tienes {{count}} notificaciones nuevas',
            'fr': 'Vous avez {{count}} nouvelles notifications',
        },
        'body': {
            'en': '{{summary}}',
            'es': '{{summary}}',
            'fr': '{{summary}}',
        },
        'data': {'count': '{{count}}'},
        'priority': 'normal',
    },
]


def _lookup(variables: Dict[str, Any], dotted: str) -> Any:
    value: Any = variables
    for part in dotted.split('.'):
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value


def render_text(text: str, variables: Dict[str, Any]) -> str:
    """Apply conditional sections, then substitute variables."""

    def _section(match):
        return match.group(2) if variables.get(match.group(1)) else ''

    text = _SECTION.sub(_section, text)

    def _variable(match):
        value = _lookup(variables, match.group(1))
        return match.group(0) if value is None else str(value)

    return _VARIABLE.sub(_variable, text)


class TemplateRegistry(TemplateRenderer):
    """In-memory template registry with a bounded render cache."""

    def __init__(
        self,
        templates_file: Optional[str] = None,
        default_locale: str = DEFAULT_LOCALE,
        cache_size: int = 1000
    ):
        self.default_locale = default_locale
        self.cache_size = cache_size
        self._templates: Dict[str, NotificationTemplate] = {}
        self._cache: "OrderedDict[str, RenderedMessage]" = OrderedDict()
        self._lock = threading.Lock()
        self.cache_hits = 0
        self.cache_misses = 0

        for raw in DEFAULT_TEMPLATES:
            self.register(NotificationTemplate(**raw))
        if templates_file:
            self.load_file(templates_file)

    def load_file(self, path: str) -> int:
        """Load extra templates from a YAML file with a top-level `templates` list."""
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        loaded = 0
        for raw in data.get('templates', []):
            self.register(NotificationTemplate(**raw), replace=True)
            loaded += 1
        logger.info(f"Loaded {loaded} templates from {path}")
        return loaded

    def register(self, template: NotificationTemplate, replace: bool = False) -> None:
        if 'en' not in template.title or 'en' not in template.body:
            raise ValueError(f"Template {template.id} needs English title and body")
        if template.id in self._templates and not replace:
            raise ValueError(f"Template with ID {template.id} already exists")
        with self._lock:
            self._templates[template.id] = template
            self._cache.clear()

    def get(self, template_id: str) -> Optional[NotificationTemplate]:
        return self._templates.get(template_id)

    def list_ids(self) -> List[str]:
        return sorted(self._templates)

    def render(
        self,
        template_id: str,
        variables: Dict[str, Any],
        locale: Optional[str] = None
    ) -> Optional[RenderedMessage]:
        locale = locale or self.default_locale
        cache_key = f"{template_id}:{locale}:{json.dumps(variables, sort_keys=True, default=str)}"
        with self._lock:
            cached = self._cache.get(cache_key)
            if cached is not None:
                self._cache.move_to_end(cache_key)
                self.cache_hits += 1
                return cached
            self.cache_misses += 1

        template = self._templates.get(template_id)
        if template is None:
            logger.warning(f"Template not found: {template_id}")
            return None

        title = template.title.get(locale) or template.title[DEFAULT_LOCALE]
        body = template.body.get(locale) or template.body[DEFAULT_LOCALE]
        data = {
            key: render_text(value, variables) if isinstance(value, str) else value
            for key, value in template.data.items()
        }
        message = RenderedMessage(
            title=render_text(title, variables),
            body=render_text(body, variables),
            data=data,
            priority=template.priority,
            sound=template.sound,
            icon=template.icon,
            category=template.category or template.type
        )

        with self._lock:
            self._cache[cache_key] = message
            while len(self._cache) > self.cache_size:
                self._cache.popitem(last=False)
        return message

    def cache_stats(self) -> Dict[str, Any]:
        total = self.cache_hits + self.cache_misses
        return {
            'hits': self.cache_hits,
            'misses': self.cache_misses,
            'size': len(self._cache),
            'hit_rate': self.cache_hits / total if total else 0.0,
        }
