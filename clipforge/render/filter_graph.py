"""FFmpeg filter graph construction for clip concatenation renders.

Every clip goes through the same normalization chain (fit to the canvas,
square pixels, fixed frame rate, yuv420p) so that ``concat`` always sees
uniform inputs, whether the job has one clip or twenty. Optional background
music is the last input and becomes the only audio stream of the output.

The builder is a pure function of its arguments: equal inputs produce equal
``TransformGraph`` values, which is what the tests compare.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from clipforge.config import get_settings

settings = get_settings()

VIDEO_OUT_LABEL = "vout"
AUDIO_OUT_LABEL = "aout"


class FillPolicy(Enum):
    """How a clip whose aspect ratio differs from the canvas is fitted."""

    CONTAIN = "contain"  # letterbox / pillarbox with black bars
    COVER = "cover"  # fill the canvas, crop the overflow


@dataclass(frozen=True)
class ClipInput:
    """A resolved clip as seen by the graph builder."""

    path: str
    order: float
    start_time: Optional[float] = None
    end_time: Optional[float] = None


@dataclass(frozen=True)
class MusicInput:
    """Resolved background music."""

    path: str
    volume: float = 1.0


@dataclass(frozen=True)
class GraphInput:
    """One ``-i`` input with its trim options."""

    path: str
    start_time: Optional[float] = None
    duration: Optional[float] = None

    def to_args(self) -> list[str]:
        args: list[str] = []
        if self.start_time:
            args.extend(["-ss", f"{self.start_time:.3f}"])
        if self.duration is not None:
            args.extend(["-t", f"{self.duration:.3f}"])
        args.extend(["-i", self.path])
        return args


@dataclass(frozen=True)
class TransformGraph:
    """Declarative description of one render's inputs and filters."""

    inputs: tuple[GraphInput, ...]
    video_chains: tuple[str, ...]
    join_chain: str
    audio_chain: Optional[str]
    width: int
    height: int
    fps: int

    @property
    def has_audio(self) -> bool:
        return self.audio_chain is not None

    @property
    def video_label(self) -> str:
        return f"[{VIDEO_OUT_LABEL}]"

    @property
    def audio_label(self) -> Optional[str]:
        return f"[{AUDIO_OUT_LABEL}]" if self.has_audio else None

    def filter_complex(self) -> str:
        """The ``-filter_complex`` argument."""
        chains = [*self.video_chains, self.join_chain]
        if self.audio_chain:
            chains.append(self.audio_chain)
        return ";".join(chains)

    def input_args(self) -> list[str]:
        args: list[str] = []
        for graph_input in self.inputs:
            args.extend(graph_input.to_args())
        return args


class FilterGraphBuilder:
    """Builds the scale/pad|crop -> concat (+ music) graph for a job."""

    def __init__(
        self,
        fill_policy: FillPolicy | str | None = None,
        fps: int | None = None,
        audio_sample_rate: int | None = None,
    ):
        self.fill_policy = FillPolicy(fill_policy or settings.render_fill_policy)
        self.fps = fps or settings.render_fps
        self.audio_sample_rate = audio_sample_rate or settings.render_audio_sample_rate

    def build(
        self,
        clips: Sequence[ClipInput],
        music: Optional[MusicInput],
        width: int,
        height: int,
    ) -> TransformGraph:
        """Build the transform graph.

        Args:
            clips: resolved clips in submission order
            music: resolved background music, or None for a silent render
            width: canvas width in pixels
            height: canvas height in pixels

        Returns:
            TransformGraph with one video chain per clip, in ascending ``order``
        """
        if not clips:
            raise ValueError("At least one clip is required to build a render graph")
        if width <= 0 or height <= 0 or width % 2 or height % 2:
            raise ValueError(f"Canvas size must be positive and even, got {width}x{height}")

        # sorted() is stable: equal order keys keep submission order
        ordered = sorted(clips, key=lambda c: c.order)

        inputs: list[GraphInput] = []
        video_chains: list[str] = []
        for idx, clip in enumerate(ordered):
            inputs.append(self._graph_input(clip))
            video_chains.append(self._clip_chain(idx, width, height))

        labels = "".join(f"[v{idx}]" for idx in range(len(ordered)))
        join_chain = f"{labels}concat=n={len(ordered)}:v=1:a=0[{VIDEO_OUT_LABEL}]"

        audio_chain = None
        if music is not None:
            music_idx = len(inputs)
            inputs.append(GraphInput(path=music.path))
            audio_chain = (
                f"[{music_idx}:a]volume={music.volume:g},"
                f"aresample={self.audio_sample_rate},asetpts=PTS-STARTPTS[{AUDIO_OUT_LABEL}]"
            )

        return TransformGraph(
            inputs=tuple(inputs),
            video_chains=tuple(video_chains),
            join_chain=join_chain,
            audio_chain=audio_chain,
            width=width,
            height=height,
            fps=self.fps,
        )

    @staticmethod
    def _graph_input(clip: ClipInput) -> GraphInput:
        start = clip.start_time or None
        duration = None
        if clip.end_time is not None:
            duration = clip.end_time - (clip.start_time or 0.0)
        return GraphInput(path=clip.path, start_time=start, duration=duration)

    def _clip_chain(self, idx: int, width: int, height: int) -> str:
        if self.fill_policy == FillPolicy.CONTAIN:
            fit = (
                f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
                f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2:color=black"
            )
        else:
            fit = (
                f"scale={width}:{height}:force_original_aspect_ratio=increase,"
                f"crop={width}:{height}"
            )
        return f"[{idx}:v]setpts=PTS-STARTPTS,{fit},setsar=1,fps={self.fps},format=yuv420p[v{idx}]"
