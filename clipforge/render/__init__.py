from clipforge.render.asset_resolver import AssetResolver
from clipforge.render.encode_runner import EncodeResult, EncodeRunner
from clipforge.render.filter_graph import FilterGraphBuilder, FillPolicy, TransformGraph
from clipforge.render.job_manager import JobManager
from clipforge.render.publisher import Publisher

__all__ = [
    "AssetResolver",
    "EncodeResult",
    "EncodeRunner",
    "FillPolicy",
    "FilterGraphBuilder",
    "JobManager",
    "Publisher",
    "TransformGraph",
]
