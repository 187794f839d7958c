from pyteal import *

ADMIN_KEY = Bytes("admin")
ELECTION_COUNT_KEY = Bytes("election_count")

CLOSED_OFFSET = 16
CANDIDATE_COUNT_OFFSET = 24


def _election_key(election_id: Expr) -> Expr:
    return Concat(Bytes("e"), election_id)


def _title_key(election_id: Expr) -> Expr:
    return Concat(Bytes("et"), election_id)


def _description_key(election_id: Expr) -> Expr:
    return Concat(Bytes("ed"), election_id)


def _candidate_key(election_id: Expr, candidate_id: Expr) -> Expr:
    return Concat(Bytes("c"), election_id, candidate_id)


def _candidate_name_key(election_id: Expr, candidate_id: Expr) -> Expr:
    return Concat(Bytes("cn"), election_id, candidate_id)


def _candidate_party_key(election_id: Expr, candidate_id: Expr) -> Expr:
    return Concat(Bytes("cp"), election_id, candidate_id)


def _voter_key(election_id: Expr, voter: Expr) -> Expr:
    return Concat(Bytes("v"), election_id, voter)


def _is_admin() -> Expr:
    return Txn.sender() == App.globalGet(ADMIN_KEY)


def build_approval_program() -> Expr:
    on_create = Seq(
        App.globalPut(ADMIN_KEY, Txn.sender()),
        App.globalPut(ELECTION_COUNT_KEY, Int(0)),
        Approve(),
    )

    new_election_id = ScratchVar(TealType.bytes)
    create_election = Seq(
        Assert(Txn.application_args.length() == Int(5)),
        Assert(_is_admin()),
        Assert(Len(Txn.application_args[3]) == Int(8)),
        Assert(Len(Txn.application_args[4]) == Int(8)),
        App.globalPut(ELECTION_COUNT_KEY, App.globalGet(ELECTION_COUNT_KEY) + Int(1)),
        new_election_id.store(Itob(App.globalGet(ELECTION_COUNT_KEY))),
        BoxPut(
            _election_key(new_election_id.load()),
            Concat(Txn.application_args[3], Txn.application_args[4], Itob(Int(0)), Itob(Int(0))),
        ),
        BoxPut(_title_key(new_election_id.load()), Txn.application_args[1]),
        BoxPut(_description_key(new_election_id.load()), Txn.application_args[2]),
        Log(Concat(Bytes("election"), new_election_id.load())),
        Approve(),
    )

    add_header = BoxGet(_election_key(Txn.application_args[1]))
    new_candidate_id = ScratchVar(TealType.bytes)
    add_candidate = Seq(
        Assert(Txn.application_args.length() == Int(4)),
        Assert(_is_admin()),
        Assert(Len(Txn.application_args[1]) == Int(8)),
        add_header,
        Assert(add_header.hasValue()),
        Assert(ExtractUint64(add_header.value(), Int(CLOSED_OFFSET)) == Int(0)),
        new_candidate_id.store(Itob(ExtractUint64(add_header.value(), Int(CANDIDATE_COUNT_OFFSET)) + Int(1))),
        BoxReplace(_election_key(Txn.application_args[1]), Int(CANDIDATE_COUNT_OFFSET), new_candidate_id.load()),
        BoxPut(_candidate_key(Txn.application_args[1], new_candidate_id.load()), Itob(Int(0))),
        BoxPut(_candidate_name_key(Txn.application_args[1], new_candidate_id.load()), Txn.application_args[2]),
        BoxPut(_candidate_party_key(Txn.application_args[1], new_candidate_id.load()), Txn.application_args[3]),
        Log(Concat(Bytes("candidate"), Txn.application_args[1], new_candidate_id.load())),
        Approve(),
    )

    close_header = BoxGet(_election_key(Txn.application_args[1]))
    close_election = Seq(
        Assert(Txn.application_args.length() == Int(2)),
        Assert(_is_admin()),
        Assert(Len(Txn.application_args[1]) == Int(8)),
        close_header,
        Assert(close_header.hasValue()),
        BoxReplace(_election_key(Txn.application_args[1]), Int(CLOSED_OFFSET), Itob(Int(1))),
        Approve(),
    )

    vote_header = BoxGet(_election_key(Txn.application_args[1]))
    voter_marker = BoxLen(_voter_key(Txn.application_args[1], Txn.sender()))
    candidate_votes = BoxGet(_candidate_key(Txn.application_args[1], Txn.application_args[2]))
    start_at = ExtractUint64(vote_header.value(), Int(0))
    end_at = ExtractUint64(vote_header.value(), Int(8))
    vote = Seq(
        Assert(Txn.application_args.length() == Int(3)),
        Assert(Len(Txn.application_args[1]) == Int(8)),
        Assert(Len(Txn.application_args[2]) == Int(8)),
        vote_header,
        Assert(vote_header.hasValue()),
        Assert(ExtractUint64(vote_header.value(), Int(CLOSED_OFFSET)) == Int(0)),
        Assert(Or(start_at == Int(0), Global.latest_timestamp() >= start_at)),
        Assert(Or(end_at == Int(0), Global.latest_timestamp() < end_at)),
        voter_marker,
        Assert(Not(voter_marker.hasValue())),
        candidate_votes,
        Assert(candidate_votes.hasValue()),
        BoxPut(
            _candidate_key(Txn.application_args[1], Txn.application_args[2]),
            Itob(Btoi(candidate_votes.value()) + Int(1)),
        ),
        # marker value: candidate id then the round the vote committed in
        BoxPut(_voter_key(Txn.application_args[1], Txn.sender()), Concat(Txn.application_args[2], Itob(Global.round()))),
        Log(Concat(Bytes("voted"), Txn.application_args[1], Txn.application_args[2], Txn.sender())),
        Approve(),
    )

    return Cond(
        [Txn.application_id() == Int(0), on_create],
        [
            Txn.on_completion() == OnComplete.NoOp,
            Cond(
                [Txn.application_args[0] == Bytes("create_election"), create_election],
                [Txn.application_args[0] == Bytes("add_candidate"), add_candidate],
                [Txn.application_args[0] == Bytes("close_election"), close_election],
                [Txn.application_args[0] == Bytes("vote"), vote],
            ),
        ],
        [Txn.on_completion() == OnComplete.OptIn, Reject()],
        [Txn.on_completion() == OnComplete.CloseOut, Reject()],
        [Txn.on_completion() == OnComplete.UpdateApplication, Reject()],
        [Txn.on_completion() == OnComplete.DeleteApplication, Reject()],
    )


def build_clear_program() -> Expr:
    return Approve()


def compile_contract() -> tuple[str, str]:
    approval = compileTeal(
        build_approval_program(),
        mode=Mode.Application,
        version=8,
    )
    clear = compileTeal(
        build_clear_program(),
        mode=Mode.Application,
        version=8,
    )
    return approval, clear


if __name__ == "__main__":
    approval_teal, clear_teal = compile_contract()
    print(approval_teal)
    print(clear_teal)
