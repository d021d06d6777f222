"""
OpenAI-backed implementation of ``GenerationAPI``.

One chat completion per call, no retries: a failed request becomes an
``Err`` and the orchestrator records it. Prompts ask for French output and,
where the caller needs structure, for a JSON object; the raw text is
returned and parsed leniently by the enrichment steps.
"""

import json
from typing import Any, Dict, List, Optional

import openai
from openai import AsyncOpenAI

from iris_workflow.collaborators import Err, ErrorRecord, Ok, Result
from iris_workflow.config import IrisConfig, config
from iris_workflow.exceptions import ProviderNotConfiguredError
from iris_workflow.state import RecentPost
from iris_workflow.utils.logging import get_logger

logger = get_logger("iris_workflow.clients.openai")

SYSTEM_PROMPT = (
    "Tu es le rédacteur du blog de Jardin Iris, jardinier paysagiste à Bruxelles. "
    "Tu écris en français, pour des particuliers passionnés de jardinage."
)

DRAFT_INSTRUCTIONS = """Rédige un article de blog sur le sujet : {topic}

Réponds uniquement avec un objet JSON contenant les clés :
"titre", "description_meteo", "phrase_accroche", "article", "new_href",
"citation", "lien_url_article", "categorie".

"article" est du HTML : un élément <article> contenant {chapters} chapitres,
chacun dans <span id="paragraphe-N"> (N de 1 à {chapters}) et commençant par
un titre <h4>. "new_href" est un slug en minuscules séparé par des tirets."""


class OpenAIGenerationClient:
    """Generation collaborator talking to the OpenAI chat completions API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        settings: Optional[IrisConfig] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        settings = settings or config
        self.model = model or settings.models.GENERATION_MODEL
        self.temperature = settings.models.GENERATION_TEMPERATURE if temperature is None else temperature
        self.workflow = settings.workflow

        if client is not None:
            self.client = client
            return

        api_key = api_key or settings.api.OPENAI_API_KEY
        if not api_key:
            raise ProviderNotConfiguredError("OPENAI_API_KEY is not set")
        self.client = AsyncOpenAI(api_key=api_key, base_url=settings.api.OPENAI_BASE_URL)

    async def _complete(self, purpose: str, prompt: str, json_mode: bool = False) -> Result[str]:
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": self.temperature,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            response = await self.client.chat.completions.create(**kwargs)
        except openai.OpenAIError as e:
            logger.error("generation_request_failed", purpose=purpose, error=str(e), exc_type=type(e).__name__)
            return Err(ErrorRecord.from_exception(e))

        content = (response.choices[0].message.content or "") if response.choices else ""
        if not content.strip():
            logger.warning("generation_empty_response", purpose=purpose)
            return Err(ErrorRecord(message=f"Empty response for {purpose}", name="EmptyResponse"))

        logger.info("generation_completed", purpose=purpose, model=self.model, chars=len(content))
        return Ok(content)

    async def produce_draft(self, topic: str) -> Result[str]:
        if not topic or not topic.strip():
            return Err(ErrorRecord(message="empty topic", name="ValueError"))
        prompt = DRAFT_INSTRUCTIONS.format(topic=topic.strip(), chapters=self.workflow.CHAPTER_COUNT)
        return await self._complete("draft", prompt, json_mode=True)

    async def produce_faq(self, article: str) -> Result[str]:
        prompt = (
            "À partir de l'article ci-dessous, écris 4 à 6 questions fréquentes avec leurs réponses. "
            'Réponds avec un objet JSON {"faq": [{"question": "...", "response": "..."}]}.\n\n'
            f"{article}"
        )
        return await self._complete("faq", prompt, json_mode=True)

    async def produce_internal_links(self, article: str, recent_posts: List[RecentPost]) -> Result[str]:
        posts = json.dumps(
            [{"titre": post.title, "id": post.id, "new_href": post.slug} for post in recent_posts],
            ensure_ascii=False,
        )
        prompt = (
            "Ajoute dans l'article des liens internes vers les articles suivants lorsque le sujet s'y prête, "
            "au maximum un lien par article cité, sous la forme <a href=\"/blog/{id}/{new_href}\">. "
            "Ne modifie pas la structure HTML. "
            'Réponds avec un objet JSON {"article": "<html complet>"}.\n\n'
            f"Articles disponibles : {posts}\n\nArticle :\n{article}"
        )
        return await self._complete("internal_links", prompt, json_mode=True)

    async def produce_botanical_enrichment(self, article: str) -> Result[str]:
        prompt = (
            "Après chaque nom commun de plante cité dans l'article, ajoute son nom botanique latin "
            "entre parenthèses et en italique, une seule fois par plante. Entoure le nom commun "
            "d'une infobulle de la forme "
            '<span class="inat-vegetal" data-taxon-name="<nom latin>" data-paragraphe-id="<chapitre>-<n>">'
            '<nom commun><div class="inat-vegetal-tooltip"><img src="" alt="<nom latin>"/></div></span>. '
            "Ne modifie rien d'autre. "
            'Réponds avec un objet JSON {"upgraded": "<html complet>"}.\n\n'
            f"{article}"
        )
        return await self._complete("botanical", prompt, json_mode=True)

    async def produce_cta(self, article: str) -> Result[str]:
        services = "\n".join(
            f"- {service['url']} : {service['description']}" for service in self.workflow.SERVICE_MAPPINGS
        )
        prompt = (
            "Choisis le service de Jardin Iris le plus pertinent pour le lecteur de cet article "
            "et écris une phrase d'appel à l'action naturelle (une ou deux phrases). "
            'Réponds avec un objet JSON {"url": "...", "cta_text": "..."}.\n\n'
            f"Services :\n{services}\n\nArticle :\n{article}"
        )
        return await self._complete("cta", prompt, json_mode=True)

    async def produce_video_keywords(self, hook: str) -> Result[str]:
        prompt = (
            "Donne 3 à 5 mots-clés pour trouver une vidéo de jardinage illustrant cette phrase. "
            'Réponds avec un objet JSON {"keywords": "mot1 mot2 mot3"}.\n\n'
            f"{hook}"
        )
        return await self._complete("video_keywords", prompt, json_mode=True)

    async def produce_image_keyword(self, chapter_title: str, used_keywords: List[str]) -> Result[str]:
        used = ", ".join(used_keywords) if used_keywords else "aucun"
        prompt = (
            "Propose un mot-clé en anglais pour chercher une photo illustrant ce chapitre, "
            f"différent de ceux déjà utilisés ({used}). "
            'Réponds avec un objet JSON {"keyWord": "...", "explanation": "..."}.\n\n'
            f"Chapitre : {chapter_title}"
        )
        return await self._complete("image_keyword", prompt, json_mode=True)
