import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

from .context import ConversationContext
from .intents import Analysis, extract_payment_amount
from .onboarding import (
    Feature,
    OnboardingStateMachine,
    SetupStatus,
    Transition,
    UserProfile,
    extract_claim,
    normalize_claim,
)
from .routing import command_word
from .services import MAX_PAYMENT_AMOUNT, Balances, ContentLink, LookupResult, PaymentLink, parse_amount

log = logging.getLogger(__name__)

DIRECT_CHAR_LIMIT = 900
GROUP_CHAR_LIMIT = 280
AI_HISTORY_LINES = 6

NO_IDENTITY_PHRASES = (
    "don't have",
    "dont have",
    "do not have",
    "no fkey",
    "need to create",
    "need one",
)
NO_IDENTITY_EXACT = frozenset({"no", "nope", "nah", "not yet", "no i don't", "i don't have one"})

GREETING = re.compile(r"^(?:hi|hello|hey|gm|yo|sup)\b|good\s+(?:morning|afternoon|evening)", re.IGNORECASE)
HELP_WORD = re.compile(r"\b(?:help|commands)\b", re.IGNORECASE)
PRIVACY_WORD = re.compile(r"\b(?:privacy|private|stealth)\b", re.IGNORECASE)

GUARANTEED_FALLBACK = (
    "👋 **Hello! I'm the dStealth Agent**\n\n"
    "I help with stealth addresses, private payment links and privacy rewards.\n\n"
    "**Quick start:**\n"
    "1. Tell me your fkey.id username (like \"tantodefi\")\n"
    "2. Or say \"no\" if you need to create one\n"
    "3. Type **/help** for every command"
)
SEND_FAILURE_TEXT = (
    "🤖 Sorry, I ran into a problem answering that. Please try again or type /help."
)


class LookupService(Protocol):
    async def lookup_fkey(self, claim: str) -> LookupResult:
        ...

    async def scan(self, address: str) -> Optional[Dict[str, Any]]:
        ...

    async def list_links(self, owner: Optional[str]) -> Optional[List[ContentLink]]:
        ...

    async def create_content(self, **kwargs: Any) -> Optional[Dict[str, Any]]:
        ...


class PaymentService(Protocol):
    async def create_link(self, amount: str, recipient: str, metadata: Optional[Dict[str, Any]] = None) -> Optional[PaymentLink]:
        ...


class BalanceService(Protocol):
    async def get_balances(self, address: str) -> Optional[Balances]:
        ...


class CompletionService(Protocol):
    async def complete(self, system_prompt: str, user_text: str) -> Optional[str]:
        ...


class IdentityIndex(Protocol):
    def get_by_identity(self, claim: str) -> Optional[UserProfile]:
        ...


@dataclass(frozen=True)
class Interaction:
    user_id: str
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Reply:
    text: str
    profile: Optional[UserProfile] = None
    events: List[Interaction] = field(default_factory=list)


def _clip(text: str, limit: int) -> str:
    text = text.strip()
    if len(text) <= limit:
        return text
    return text[: limit - 1].rstrip() + "…"


def is_no_identity(text: str) -> bool:
    lowered = " ".join(text.lower().split())
    if lowered in NO_IDENTITY_EXACT:
        return True
    return any(phrase in lowered for phrase in NO_IDENTITY_PHRASES)


class ResponseGenerator:
    """Builds the reply for one routed message.

    Nothing here persists anything: state changes come back on the `Reply`
    as a new profile and interaction events, and the caller stores them once
    the reply is out.
    """

    def __init__(
        self,
        *,
        api: LookupService,
        payments: PaymentService,
        balances: BalanceService,
        completion: Optional[CompletionService],
        identities: IdentityIndex,
        onboarding: Optional[OnboardingStateMachine] = None,
        miniapp_url: str = "https://dstealth.xyz",
        invite_url: str = "https://app.fluidkey.com/?ref=62YNSG",
    ) -> None:
        self.api = api
        self.payments = payments
        self.balances = balances
        self.completion = completion
        self.identities = identities
        self.onboarding = onboarding or OnboardingStateMachine()
        self.miniapp_url = miniapp_url
        self.invite_url = invite_url

    # ----- templates -----

    def help_text(self, *, short: bool) -> str:
        if short:
            return (
                "🥷 dStealth: `/fkey <name>` lookup, `/scan <address>`, "
                "\"create payment link for $5\". DM me to set up your fkey.id."
            )
        return (
            "🥷 **dStealth Agent - Privacy Rewards Helper**\n\n"
            "**Getting started:**\n"
            "1. Tell me your fkey.id username (or say \"no\" to create one)\n"
            f"2. Complete setup in the dStealth mini app: {self.miniapp_url}\n"
            "3. Type \"/setup complete\" to unlock all features\n\n"
            "**Available any time:**\n"
            "• **/fkey <username.fkey.id>** - Look up a stealth address\n"
            "• **/scan <address>** - Privacy scan\n"
            "• **/help** - This list\n\n"
            "**After setup:**\n"
            "• **create payment link for $X** - Anonymous payment link\n"
            "• **/links** - Your content links and earnings\n"
            "• **/balance** - ETH and USDC on your stealth address\n"
            "• **/create title | description | price | currency** - Monetized content\n\n"
            "Try: \"create payment link for $5\""
        )

    def dm_invite(self) -> str:
        return "👋 DM me to set up your fkey.id privately, then I can make payment links for you here."

    def welcome_text(self) -> str:
        return (
            "👋 **Welcome to dStealth!**\n\n"
            "I help you receive payments privately through stealth addresses and earn "
            "privacy rewards along the way.\n\n"
            "**Quick question: do you have a fkey.id already?**\n"
            "• **Yes**: tell me your username (e.g. \"tantodefi\" for tantodefi.fkey.id)\n"
            "• **No**: say \"no\" and I'll send you an invite link\n\n"
            "Type /help to see everything I can do."
        )

    def no_identity_text(self) -> str:
        return (
            "🎁 **Let's get you a fkey.id!**\n\n"
            f"**Step 1:** create your free fkey.id here: {self.invite_url}\n"
            "**Step 2:** pick a username (like \"yourname\" for yourname.fkey.id)\n"
            "**Step 3:** come back and tell me your username\n\n"
            "Your stealth address works across chains, needs no KYC and takes a couple of minutes to set up."
        )

    def claim_not_found_text(self, claim: str) -> str:
        return (
            f"❌ **{claim} not found**\n\n"
            "That fkey.id doesn't exist yet. You can:\n"
            f"1. **Create it**: {self.invite_url}\n"
            "2. **Try another username**: just type it\n"
            "3. **Get help**: type /help\n\n"
            "Make sure the username is spelled correctly."
        )

    def claim_set_text(self, profile: UserProfile) -> str:
        return (
            "✅ **Your fkey.id is verified!**\n\n"
            f"📍 **fkey.id**: {profile.fkey_id}\n"
            f"🏠 **Stealth Address**: {profile.stealth_address}\n\n"
            "**Next step:** complete setup in the dStealth mini app\n"
            f"{self.miniapp_url}\n\n"
            "Then come back and type \"/setup complete\".\n"
            "Available now: /help, /fkey, /scan (basic)."
        )

    def gated_text(self, feature: Feature, *, short: bool) -> str:
        if short:
            return f"🔒 {feature.value} needs complete setup. DM me to finish it."
        return (
            f"🔒 **{feature.value} requires complete setup**\n\n"
            f"1. **Complete the mini app setup**: {self.miniapp_url}\n"
            "2. **Come back and type**: \"/setup complete\"\n\n"
            "**Available without setup:** /help, /fkey <username>, /scan <address>"
        )

    def setup_complete_text(self, profile: UserProfile) -> str:
        return (
            "🎉 **Setup complete!**\n\n"
            f"✅ **fkey.id**: {profile.fkey_id}\n"
            f"🏠 **Stealth Address**: {profile.stealth_address}\n\n"
            "**Unlocked:** payment links, /links, /balance, /create\n\n"
            "Try: \"create a payment link for $10\""
        )

    def status_text(self, status: SetupStatus) -> str:
        if status is SetupStatus.FKEY_PENDING:
            return (
                "📍 Please tell me your fkey.id username (e.g. \"tantodefi\" for tantodefi.fkey.id) "
                "or say \"no\" if you don't have one."
            )
        if status in (SetupStatus.FKEY_SET, SetupStatus.MINIAPP_PENDING):
            return (
                f"🎯 Complete your setup in the dStealth mini app ({self.miniapp_url}), "
                "then type \"/setup complete\" to unlock all features!"
            )
        if status is SetupStatus.COMPLETE:
            return self.help_text(short=False)
        return self.welcome_text()

    # ----- entry point -----

    async def respond(
        self,
        text: str,
        analysis: Analysis,
        context: ConversationContext,
        profile: UserProfile,
        is_group: bool,
    ) -> Reply:
        content = text.strip()
        limit = GROUP_CHAR_LIMIT if is_group else DIRECT_CHAR_LIMIT

        reply = await self._route(content, analysis, context, profile, is_group)
        if reply is None or not reply.text.strip():
            log.warning("Falling back to the guaranteed reply for %r", content[:80])
            reply = Reply(GUARANTEED_FALLBACK if not is_group else self.help_text(short=True))
        if is_group:
            reply.text = _clip(reply.text, limit)
        return reply

    async def _route(
        self,
        content: str,
        analysis: Analysis,
        context: ConversationContext,
        profile: UserProfile,
        is_group: bool,
    ) -> Optional[Reply]:
        if content.startswith("/"):
            return await self._command(content, profile, is_group)

        amount = extract_payment_amount(content) if analysis.has("payment") else None
        if amount:
            return await self._payment(amount, profile, is_group)
        if analysis.has("payment"):
            return Reply(
                "💳 How much should the link be for? Try \"create payment link for $25\"."
            )

        if not profile.setup_status.has_identity and is_no_identity(content):
            if is_group:
                return Reply(self.dm_invite())
            return Reply(
                self.no_identity_text(),
                events=[Interaction(profile.user_id, "no_fkey_guidance")],
            )

        claim = self._claim_in(content, analysis, profile)
        if claim:
            if is_group:
                return Reply(self.dm_invite())
            return await self._claim(claim, profile)

        keyword = self._keywords(content, profile, is_group)
        if keyword:
            return keyword

        if analysis.requires_ai and self.completion:
            text = await self._ai(content, context, profile, is_group)
            if text:
                return Reply(text)

        return self._status_fallback(profile, is_group)

    # ----- onboarding -----

    def _claim_in(self, content: str, analysis: Analysis, profile: UserProfile) -> Optional[str]:
        claim = extract_claim(content)
        if not claim:
            return None
        bare = content.strip().lower() in (claim, normalize_claim(claim))
        # A bare word is only read as a username before one is stored and when
        # it matched no trigger, so "hello" or "links" never hit the lookup API.
        if bare and (profile.setup_status.has_identity or (analysis.triggers and analysis.triggers != ("identity",))):
            return None
        return claim

    async def _claim(self, claim: str, profile: UserProfile) -> Reply:
        normalized = normalize_claim(claim)
        result = await self.api.lookup_fkey(normalized)
        if not result.found:
            return Reply(
                self.claim_not_found_text(normalized),
                events=[Interaction(profile.user_id, "fkey_not_found", {"fkeyId": normalized})],
            )
        owner = self.identities.get_by_identity(normalized)
        if owner and owner.user_id.lower() != profile.user_id.lower() and not result.proof:
            log.info("Rejected %s claim by %s: already linked to another user", normalized, profile.user_id)
            return Reply(
                f"⚠️ **{normalized} is already linked to another account.**\n\n"
                "If it's yours, complete the mini app setup to prove ownership, "
                "or tell me a different username.",
                events=[Interaction(profile.user_id, "fkey_claim_rejected", {"fkeyId": normalized})],
            )
        transition = self.onboarding.claim_identity(profile, normalized, result.address, result.proof)
        return Reply(
            self.claim_set_text(transition.profile),
            profile=transition.profile,
            events=[
                Interaction(
                    profile.user_id,
                    "fkey_set",
                    {"fkeyId": normalized, "address": result.address},
                )
            ],
        )

    def _keywords(self, content: str, profile: UserProfile, is_group: bool) -> Optional[Reply]:
        if GREETING.search(content):
            if is_group:
                return Reply(self.help_text(short=True))
            if profile.setup_status is SetupStatus.NEW:
                return self._welcome(profile)
            if profile.is_complete:
                return Reply(
                    "👋 Welcome back! Try \"create payment link for $10\", /links or /balance."
                )
            return Reply(f"👋 Hey there! {self.status_text(profile.setup_status)}")
        if HELP_WORD.search(content):
            return Reply(self.help_text(short=is_group))
        if PRIVACY_WORD.search(content):
            if is_group:
                return Reply("🔒 I make stealth-address payment links. DM me to get set up.")
            return Reply(
                "🔒 I help with stealth addresses and privacy-focused Web3 payments. "
                "Type /help for more details!"
            )
        return None

    def _welcome(self, profile: UserProfile) -> Reply:
        transition = self.onboarding.welcome(profile)
        return Reply(
            self.welcome_text(),
            profile=transition.profile if transition.changed else None,
            events=[Interaction(profile.user_id, "first_contact")] if transition.changed else [],
        )

    def _status_fallback(self, profile: UserProfile, is_group: bool) -> Reply:
        if is_group:
            if profile.is_complete:
                return Reply(self.help_text(short=True))
            return Reply(self.dm_invite())
        if profile.setup_status is SetupStatus.NEW:
            return self._welcome(profile)
        return Reply(self.status_text(profile.setup_status))

    def _gate(self, profile: UserProfile, feature: Feature, is_group: bool) -> Optional[Reply]:
        if self.onboarding.allows(profile, feature):
            return None
        transition: Transition = self.onboarding.point_to_miniapp(profile)
        return Reply(
            self.gated_text(feature, short=is_group),
            profile=transition.profile if transition.changed else None,
            events=[Interaction(profile.user_id, "feature_gated", {"feature": feature.value})],
        )

    # ----- commands -----

    async def _command(self, content: str, profile: UserProfile, is_group: bool) -> Reply:
        word = command_word(content) or content
        argument = content.strip()[len(word):].strip()

        if word == "/help":
            return Reply(self.help_text(short=is_group))
        if word == "/setup":
            return self._setup(argument, profile, is_group)
        if word == "/fkey":
            if not argument:
                return Reply("Please provide a fkey.id to look up (e.g. `/fkey tantodefi.fkey.id`)")
            return await self._lookup(argument, profile, is_group)
        if word == "/scan":
            if not argument:
                return Reply("Please provide an address to scan (e.g. `/scan 0x...`)")
            return await self._scan(argument, profile, is_group)
        if word == "/links":
            return await self._links(profile, is_group)
        if word == "/balance":
            return await self._balance(profile, is_group)
        if word == "/create":
            return await self._create(argument, profile, is_group)

        return Reply(
            f"❓ **Unknown command**: {content.split()[0]}\n\nType **/help** to see available commands."
        )

    def _setup(self, argument: str, profile: UserProfile, is_group: bool) -> Reply:
        if argument.lower() != "complete":
            if is_group:
                return Reply(self.dm_invite())
            return Reply(self.status_text(profile.setup_status))
        transition = self.onboarding.complete_setup(profile)
        if not transition.accepted:
            return Reply(
                "❌ **Setup incomplete**\n\nPlease set your fkey.id first by telling me your username!"
            )
        if is_group:
            text = f"🎉 Setup complete for {transition.profile.fkey_id}."
        else:
            text = self.setup_complete_text(transition.profile)
        return Reply(
            text,
            profile=transition.profile,
            events=[Interaction(profile.user_id, "miniapp_setup_complete")] if transition.changed else [],
        )

    async def _lookup(self, argument: str, profile: UserProfile, is_group: bool) -> Reply:
        claim = normalize_claim(argument.split()[0])
        cached = self.identities.get_by_identity(claim)
        if cached and cached.stealth_address:
            address = cached.stealth_address
            label = " (cached)"
        else:
            result = await self.api.lookup_fkey(claim)
            if not result.found:
                return Reply(f"❌ **Fkey lookup failed**\n{result.error or 'Profile not found'}")
            address = result.address
            label = ""
        events = [Interaction(profile.user_id, "fkey_lookup", {"fkeyId": claim, "cached": bool(label)})]
        if is_group:
            return Reply(f"🔑 {claim}: {address}", events=events)
        return Reply(
            f"🔑 **Stealth Address Found{label}**\n📍 fkey.id: {claim}\n🏠 Address: {address}",
            events=events,
        )

    async def _scan(self, address: str, profile: UserProfile, is_group: bool) -> Reply:
        result = await self.api.scan(address)
        events = [Interaction(profile.user_id, "stealth_scan", {"address": address})]
        if result is None:
            return Reply(f"❌ **Scan failed**: unable to scan address {address}", events=events)
        transactions = result.get("transactions") or []
        if not self.onboarding.allows(profile, Feature.BALANCE):
            text = (
                f"🔍 **Basic Address Scan**: {address}\n\n"
                f"📋 Stealth transactions found: {len(transactions)}\n\n"
                f"Complete setup at {self.miniapp_url} and type \"/setup complete\" for the full privacy analysis."
            )
        else:
            text = (
                f"🔍 **Privacy Analysis**: {address}\n\n"
                f"- Privacy Score: {result.get('privacyScore') or 'not analyzed'}\n"
                f"- Stealth Transactions: {len(transactions)}\n"
                f"- Balance: {result.get('balance') or '0.00'} ETH"
            )
        if is_group:
            text = f"🔍 {address}: {len(transactions)} stealth transactions."
        return Reply(text, events=events)

    async def _links(self, profile: UserProfile, is_group: bool) -> Reply:
        gated = self._gate(profile, Feature.LINKS, is_group)
        if gated:
            return gated
        links = await self.api.list_links(profile.stealth_address)
        events = [Interaction(profile.user_id, "proxy402_links_view")]
        if links is None:
            return Reply("❌ **Failed to fetch links**: please try again later", events=events)
        if not links:
            return Reply(
                "📊 **Your Privacy Links**\n\nNo links created yet. "
                "Try \"create payment link for $10\" or `/create title | description | price | currency`.",
                events=events,
            )
        total = sum(link.earnings for link in links)
        if is_group:
            return Reply(f"📊 {len(links)} links, ${total:.2f} earned.", events=events)
        lines = [
            f"{index}. **{link.title}** - ${link.price}\n   💰 Earned: ${link.earnings:.2f}  👀 Views: {link.views}"
            for index, link in enumerate(links, start=1)
        ]
        return Reply(
            f"📊 **Your Privacy Links & Earnings**\n\n💰 **Total Earnings**: ${total:.2f}\n"
            f"🔗 **Active Links**: {len(links)}\n\n" + "\n\n".join(lines),
            events=events,
        )

    async def _balance(self, profile: UserProfile, is_group: bool) -> Reply:
        gated = self._gate(profile, Feature.BALANCE, is_group)
        if gated:
            return gated
        balances = await self.balances.get_balances(profile.stealth_address)
        if balances is None:
            return Reply("❌ Unable to fetch balance right now. Please try again later.")
        return Reply(
            f"💰 **Your Balance** ({profile.fkey_id})\n💵 USDC: ${balances.usdc:.2f}\n⚡ ETH: {balances.eth:.6f}",
            events=[Interaction(profile.user_id, "balance_check")],
        )

    async def _create(self, argument: str, profile: UserProfile, is_group: bool) -> Reply:
        gated = self._gate(profile, Feature.CONTENT, is_group)
        if gated:
            return gated
        parts = [part.strip() for part in argument.split("|")]
        price = parse_amount(parts[2]) if len(parts) == 4 else None
        if len(parts) != 4 or not all(parts) or price is None:
            return Reply(
                "❌ **Invalid format!**\nUse: `/create title | description | price | currency`"
            )
        title, description, _, currency = parts
        result = await self.api.create_content(
            title=title,
            description=description,
            price=price,
            currency=currency.upper(),
            owner=profile.stealth_address,
        )
        if result is None:
            return Reply("❌ **Creation failed**: please try again later")
        return Reply(
            f"✅ **Content Created!**\n\"{title}\" - {parts[2]} {currency.upper()}"
            + (f"\n🔗 {result['url']}" if result.get("url") else ""),
            events=[Interaction(profile.user_id, "content_created", {"title": title, "price": parts[2]})],
        )

    # ----- payments -----

    async def _payment(self, amount: str, profile: UserProfile, is_group: bool) -> Reply:
        gated = self._gate(profile, Feature.PAYMENT_LINK, is_group)
        if gated:
            return gated
        value = parse_amount(amount)
        if value is None:
            return Reply(f"❌ ${amount} isn't a valid amount. Try \"create payment link for $25\".")
        if value > MAX_PAYMENT_AMOUNT:
            return Reply(
                f"❌ **Payment amount too large**\n\nRequested: ${amount}\n"
                f"Limit: ${MAX_PAYMENT_AMOUNT:.2f} per link. Please try a smaller amount."
            )
        metadata = {
            "fkeyId": profile.fkey_id,
            "stealthAddress": profile.stealth_address,
            "zkProof": "available" if profile.proof else "pending",
            "source": "dstealth-agent",
        }
        link = await self.payments.create_link(amount, profile.stealth_address, metadata)
        if link is None:
            return Reply("❌ Failed to create payment link. Please try again.")
        events = [
            Interaction(
                profile.user_id,
                "payment_link_generated",
                {"amount": amount, "address": profile.stealth_address, "link": link.url, "id": link.id},
            )
        ]
        if is_group:
            return Reply(f"💳 ${amount} USDC to {profile.fkey_id}: {link.url}", events=events)
        return Reply(
            "💳 **Anonymous Payment Link Generated!**\n\n"
            f"💰 **Amount**: ${amount} USDC\n"
            f"🏠 **To**: {profile.stealth_address}\n"
            f"📍 **fkey.id**: {profile.fkey_id}\n\n"
            f"🔗 **Payment Link**:\n{link.url}\n\n"
            "Anyone can pay through this link from any wallet; funds land on your stealth address.",
            events=events,
        )

    # ----- ai -----

    def _system_prompt(self, context: ConversationContext, profile: UserProfile, is_group: bool) -> str:
        if profile.fkey_id:
            user_line = f"The user has fkey.id {profile.fkey_id} (setup: {profile.setup_status.value})."
        else:
            user_line = "The user has not claimed a fkey.id yet; suggest telling you their username or saying \"no\"."
        words = 40 if is_group else 120
        history = [
            f"{entry.role}: {entry.content}" for entry in context.history[-AI_HISTORY_LINES:]
        ]
        prompt = (
            "You are the dStealth agent. Only discuss stealth addresses, fkey.id identities, "
            "on-chain privacy and private payment links. Politely decline anything else. "
            f"{user_line} "
            "Commands: /help, /fkey <username>, /scan <address>, /links, /balance, "
            "/create title | description | price | currency, /setup complete, "
            "\"create payment link for $X\". "
            f"Answer in at most {words} words and suggest a relevant command."
        )
        if history:
            prompt += "\nRecent conversation:\n" + "\n".join(history)
        return prompt

    async def _ai(self, content: str, context: ConversationContext, profile: UserProfile, is_group: bool) -> Optional[str]:
        text = await self.completion.complete(self._system_prompt(context, profile, is_group), content)
        if not text or not text.strip():
            return None
        limit = GROUP_CHAR_LIMIT if is_group else DIRECT_CHAR_LIMIT
        return _clip(text, limit)


def summarize_events(events: Sequence[Interaction]) -> str:
    return ", ".join(event.kind for event in events) or "none"
