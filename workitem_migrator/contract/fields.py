"""Reference names of the work item fields the replay engine handles itself."""


class WiFieldReference:
    """Work item field reference names."""

    TITLE = "System.Title"
    DESCRIPTION = "System.Description"
    REPRO_STEPS = "Microsoft.VSTS.TCM.ReproSteps"
    HISTORY = "System.History"
    AREA_PATH = "System.AreaPath"
    ITERATION_PATH = "System.IterationPath"
    STATE = "System.State"
    TAGS = "System.Tags"
    ASSIGNED_TO = "System.AssignedTo"
    CREATED_BY = "System.CreatedBy"
    CREATED_DATE = "System.CreatedDate"
    CHANGED_BY = "System.ChangedBy"
    CHANGED_DATE = "System.ChangedDate"
    ACTIVATED_BY = "Microsoft.VSTS.Common.ActivatedBy"
    ACTIVATED_DATE = "Microsoft.VSTS.Common.ActivatedDate"
    CLOSED_BY = "Microsoft.VSTS.Common.ClosedBy"
    CLOSED_DATE = "Microsoft.VSTS.Common.ClosedDate"
    RESOLVED_BY = "Microsoft.VSTS.Common.ResolvedBy"
    RESOLVED_DATE = "Microsoft.VSTS.Common.ResolvedDate"
    PRIORITY = "Microsoft.VSTS.Common.Priority"
    REMAINING_WORK = "Microsoft.VSTS.Scheduling.RemainingWork"
    WORK_ITEM_TYPE = "System.WorkItemType"

    # Written as empty when the source clears them
    CLEARABLE = (
        ACTIVATED_DATE,
        ACTIVATED_BY,
        CLOSED_DATE,
        CLOSED_BY,
        RESOLVED_DATE,
        RESOLVED_BY,
        TAGS,
    )

    # Text fields that may embed attachment references
    RICH_TEXT = (DESCRIPTION, REPRO_STEPS, HISTORY)


class WiType:
    """Work item type names with special handling."""

    BUG = "Bug"


class WiRelationType:
    """Relation type reference names."""

    ATTACHED_FILE = "AttachedFile"
    HYPERLINK = "Hyperlink"
    PARENT = "System.LinkTypes.Hierarchy-Reverse"
    CHILD = "System.LinkTypes.Hierarchy-Forward"
    RELATED = "System.LinkTypes.Related"
