"""
Symbolizer runner — top-level orchestration: mode + profile → resolved profile.

``Symbolizer`` parses the mode directive once, runs the local and/or
remote resolvers, then (when a demangle level was requested) the
demangle pass.  Each stage that runs appends an audit comment to the
profile:

    local=[fast,force]   symbolz=[force]   force   demangle=[full]

``force`` is recorded whenever the mode forces, with or without a
demangle level; names are only rewritten when a level was given.

Resolvers and the demangler are injected; defaults are the real
implementations.  ``run_symbolize`` wraps a call and returns a
``SymbolizeReport``.
"""
import logging
from typing import List, Optional

from symbolizer.config import settings
from symbolizer.core.demangle import Decoder, DemangleSelector, NameDemangler
from symbolizer.core.diagnostics import CollectingSink, DiagnosticSink, LoggingSink
from symbolizer.core.elf_objtool import ObjTool
from symbolizer.core.local import LocalSymbolizer
from symbolizer.core.model import Profile
from symbolizer.core.remote import MappingSources, RemoteSymbolizer, SymbolLookup
from symbolizer.io.schema import ProfileCounts, StageSummary, SymbolizeReport
from symbolizer.policy.mode import SymbolizeError, parse_mode

logger = logging.getLogger(__name__)


class SymbolizationFailed(SymbolizeError):
    """One or more stages raised; every stage still ran."""

    def __init__(self, errors: List[str], stages: Optional[List[StageSummary]] = None):
        self.errors = list(errors)
        self.stages = list(stages or [])
        super().__init__("; ".join(self.errors))


def _audit(source: str, flags: List[str]) -> str:
    return f"{source}=[{','.join(flags)}]"


def _summary(stage: str, flags: List[str], result) -> StageSummary:
    return StageSummary(
        stage=stage,
        flags=flags,
        mappings_resolved=getattr(result, "mappings_resolved", 0),
        locations_resolved=getattr(result, "locations_resolved", 0),
    )


class Symbolizer:
    """Drive the resolution stages for one profile per call."""

    def __init__(
        self,
        obj_tool: Optional[ObjTool] = None,
        sink: Optional[DiagnosticSink] = None,
        local: Optional[LocalSymbolizer] = None,
        remote: Optional[RemoteSymbolizer] = None,
        demangler: Optional[DemangleSelector] = None,
        lookup: Optional[SymbolLookup] = None,
    ):
        self.sink = sink if sink is not None else LoggingSink()
        self.local = local if local is not None else LocalSymbolizer(obj_tool, self.sink)
        self.remote = remote if remote is not None else RemoteSymbolizer(lookup, self.sink)
        self.demangler = demangler

    def _demangle_stage(self) -> DemangleSelector:
        # The default decoder caches results; each call gets its own.
        if self.demangler is not None:
            return self.demangler
        return DemangleSelector()

    def symbolize(
        self,
        mode: Optional[str],
        sources: Optional[MappingSources],
        profile: Profile,
    ) -> List[StageSummary]:
        """
        Symbolize *profile* in place according to *mode*.

        Raises
        ------
        ModeError
            Before any stage runs, if *mode* is malformed.
        SymbolizationFailed
            After all stages ran, if any of them raised.
        """
        parsed = parse_mode(mode)
        if not parsed.enabled:
            logger.info("symbolization disabled by mode %r", mode)
            return []

        stages: List[StageSummary] = []
        errors: List[str] = []

        # ── Step 1: local binaries ───────────────────────────────────────
        if parsed.local:
            flags = [f for f, on in (("fast", parsed.fast), ("force", parsed.force)) if on]
            profile.comments.append(_audit("local", flags))
            try:
                result = self.local.run(profile, fast=parsed.fast, force=parsed.force)
            except Exception as e:
                logger.error("local symbolization failed: %s", e, exc_info=True)
                errors.append(f"local symbolization: {e}")
            else:
                stages.append(_summary("local", flags, result))

        # ── Step 2: remote service ───────────────────────────────────────
        if parsed.remote:
            flags = ["force"] if parsed.force else []
            profile.comments.append(_audit("symbolz", flags))
            try:
                result = self.remote.run(profile, force=parsed.force, sources=sources)
            except Exception as e:
                logger.error("remote symbolization failed: %s", e, exc_info=True)
                errors.append(f"remote symbolization: {e}")
            else:
                stages.append(_summary("remote", flags, result))

        # ── Step 3: names ────────────────────────────────────────────────
        if parsed.force:
            profile.comments.append("force")
        if parsed.run_demangle:
            level = parsed.demangle
            profile.comments.append(f"demangle=[{level.value}]")
            try:
                changed = self._demangle_stage().run(profile, parsed.force, level)
            except Exception as e:
                logger.error("demangling failed: %s", e, exc_info=True)
                errors.append(f"demangle: {e}")
            else:
                stages.append(StageSummary(
                    stage="demangle",
                    flags=[level.value] + (["force"] if parsed.force else []),
                    names_changed=changed or 0,
                ))

        if errors:
            raise SymbolizationFailed(errors, stages)
        return stages


def _counts(profile: Profile) -> ProfileCounts:
    return ProfileCounts(
        locations=len(profile.locations),
        symbolized_locations=sum(1 for loc in profile.locations if loc.symbolized),
        functions=len(profile.functions),
    )


def run_symbolize(
    profile: Profile,
    mode: Optional[str] = None,
    sources: Optional[MappingSources] = None,
    obj_tool: Optional[ObjTool] = None,
    lookup: Optional[SymbolLookup] = None,
    decoder: Optional[Decoder] = None,
) -> SymbolizeReport:
    """
    Symbolize *profile* in place and report what happened.

    Parameters
    ----------
    profile : Profile
        Profile to mutate.
    mode : str, optional
        Mode directive.  Defaults to ``settings.SYMBOLIZER_MODE``.
    sources : MappingSources, optional
        Profile URLs per mapping file / build id, for remote lookups.
    obj_tool, lookup, decoder : optional
        Collaborator overrides; real implementations otherwise.

    Stage failures are recorded in ``report.errors`` rather than raised.
    A malformed mode still raises ``ModeError``.
    """
    if mode is None:
        mode = settings.SYMBOLIZER_MODE
    parsed = parse_mode(mode)

    sink = CollectingSink()
    symbolizer = Symbolizer(
        obj_tool=obj_tool,
        sink=sink,
        demangler=DemangleSelector(NameDemangler(decoder)),
        lookup=lookup,
    )

    report = SymbolizeReport(
        mode=mode,
        demangle=parsed.demangle.value if parsed.demangle else None,
        force=parsed.force,
        before=_counts(profile),
    )
    n_comments = len(profile.comments)

    try:
        report.stages = symbolizer.symbolize(mode, sources, profile)
    except SymbolizationFailed as e:
        report.stages = e.stages
        report.errors = e.errors

    report.comments = profile.comments[n_comments:]
    report.diagnostics = list(sink.messages)
    report.after = _counts(profile)
    logger.info(
        "symbolized %d/%d locations (mode=%r, %d diagnostics)",
        report.after.symbolized_locations,
        report.after.locations,
        mode,
        len(report.diagnostics),
    )
    return report
