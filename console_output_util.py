from colorama import init, Fore, Style
init(autoreset=True)

####################################################################
#       CONFIGURATION                                              #
####################################################################
# to switch the debug output on and off
dbgON = False
####################################################################


def log_print(s):
    ''' Print string s in log format '''
    print(Fore.GREEN + f"log: {s}")


def ok_print(s):
    ''' Print string s as a positive outcome '''
    print(Fore.GREEN + Style.BRIGHT + f"ok: {s}")


def dbg_print(s1, s2):
    ''' Print string s1 (title) \n string s2 (value) in dbg format '''
    if dbgON:
        print(Fore.CYAN + f"dbg: {s1}\n{s2}")


def err_print(s):
    ''' Print string s in error format '''
    print(Fore.RED + f"err: {s}")


def result_print(key, res):
    '''
        Print the outcome of signature number `key`

        Params:
            key: 1-based position of the signature in the document
            res: its VerificationResult
    '''
    line = f"Signature {key}: {res.status.value}"
    if res.signer:
        line += f" (signer: {res.signer})"
    if res.detail:
        line += f" - {res.detail}"
    if res.valid:
        ok_print(line)
    else:
        err_print(line)

    if not res.covers_whole_document:
        log_print(f"Signature {key} does not cover the whole document")
    if res.trusted is not None:
        log_print(f"Signature {key} signer trusted: {res.trusted}")
    dbg_print(f"Signature {key}", res.as_dict())
